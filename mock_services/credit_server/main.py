from fastapi import FastAPI, HTTPException, Header
from fastapi.responses import JSONResponse
from pathlib import Path
from typing import Optional
import json
import os

app = FastAPI(title="Mock Credit Service", version="1.0.0")
# Support both local development and Docker
DATA_DIR = Path("/credit_stub") if os.path.exists("/credit_stub") else Path(__file__).resolve().parents[1] / "credit_stub"
API_KEY = os.environ.get("MOCK_CREDIT_API_KEY")


def _load(credit_id: str, x_api_key: Optional[str]) -> dict:
    if API_KEY and x_api_key != API_KEY:
        raise HTTPException(status_code=401, detail="invalid api key")
    file = DATA_DIR / f"credit_{credit_id}.json"
    if not file.exists():
        raise HTTPException(status_code=404, detail="credit not found")
    return json.loads(file.read_text())

@app.get("/health")
def health(): return {"status": "ok"}

@app.get("/api/credits/{credit_id}")
def get_credit(credit_id: str, x_api_key: Optional[str] = Header(default=None)):
    return JSONResponse(content={"credit": _load(credit_id, x_api_key)})

@app.get("/api/credits/{credit_id}/status")
def get_credit_status(credit_id: str, x_api_key: Optional[str] = Header(default=None)):
    return {"status": _load(credit_id, x_api_key)["status"]}
