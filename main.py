# main.py
import os

from config.logging_config import configure_logging

configure_logging()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from routers.news_analysis_routes import router as news_analysis_router


app = FastAPI(title="News Analysis Pipeline")

origins = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if o.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Include routers
app.include_router(news_analysis_router, prefix="/api/news-analysis")


@app.get("/health")
def health():
    return {"ok": True}
