from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from polychat.core.env_loader import load_project_env

load_project_env()

from polychat.api.routes_chat import router as chat_router
from polychat.core.logger import setup_logging

setup_logging()

app = FastAPI(title="polychat", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(chat_router)
