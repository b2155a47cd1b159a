from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from mergemonk.webhook import router as webhook_router


app = FastAPI(title="MergeMonk")

app.include_router(webhook_router, tags=["webhook"])


@app.get("/")
def root() -> Dict[str, Any]:
    return {"name": "MergeMonk", "status": "ok"}


@app.get("/health", response_class=PlainTextResponse)
def health() -> str:
    return "ok"
