from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST

from backend.app.api.v1.router import router as v1_router
from backend.services.metrics import render_latest

app = FastAPI(title="ORGSYNC", version="0.1.0")
app.include_router(v1_router, prefix="/v1")


@app.get("/metrics", include_in_schema=False)
def metrics():
    return Response(content=render_latest(), media_type=CONTENT_TYPE_LATEST)
