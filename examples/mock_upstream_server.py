from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

app = FastAPI(title="mock-studio-upstream")

WORD_DELAY_SECONDS = 0.02


def _reply_for(payload: dict[str, Any]) -> str:
    query = str(payload.get("last_user_query") or "").strip()
    if not query:
        return "Hello from the mock upstream."
    return f"Echo ({payload.get('llm_model')}): {query}"


def _authorized(request: Request) -> bool:
    return (request.headers.get("authorization") or "").startswith("Bearer ")


@app.get("/get-status")
async def get_status(request: Request) -> JSONResponse:
    if not _authorized(request):
        return JSONResponse({"detail": "unauthorized"}, status_code=401)
    return JSONResponse({"status": "ok"})


@app.post("/chat")
async def chat(request: Request) -> JSONResponse:
    if not _authorized(request):
        return JSONResponse({"detail": "unauthorized"}, status_code=401)
    payload = await request.json()
    text = _reply_for(payload)
    return JSONResponse({"output": text, "promptTokens": len(payload.get("history") or []), "completionTokens": len(text.split())})


@app.post("/streamChat")
async def stream_chat(request: Request):
    if not _authorized(request):
        return JSONResponse({"detail": "unauthorized"}, status_code=401)
    payload = await request.json()
    words = _reply_for(payload).split(" ")

    async def gen():
        for index, word in enumerate(words):
            yield json.dumps({"output": word if index == 0 else f" {word}"}) + "\n"
            await asyncio.sleep(WORD_DELAY_SECONDS)
        yield json.dumps({"output": None, "promptTokens": 3, "completionTokens": len(words)}) + "\n"

    return StreamingResponse(gen(), media_type="application/x-ndjson")
