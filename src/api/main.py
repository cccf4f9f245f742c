from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.routes.analysis import router as analysis_router
from src.api.routes.protocols import router as protocols_router
from src.api.routes.runs import router as runs_router

app = FastAPI(
    title="Protocol Timeline API",
    description="Turns OCR'd committee hearing protocols into an analyzed Q/A timeline",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_origin_regex=r"http://localhost:\d+",
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(runs_router)
app.include_router(analysis_router)
app.include_router(protocols_router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}
