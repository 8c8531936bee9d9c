"""
Study Design Decision API

Main FastAPI application
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.study_design import router as study_design_router
from services.study_design import DesignEngine, setup_logging

API_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """시작 시 설정 검증 + engine 생성 (설정 오류면 기동 중단)"""
    logger = setup_logging()
    app.state.engine = DesignEngine.from_config_dir()
    logger.info(f"Study design engine ready: {app.state.engine.registry.version_string()}")
    yield
    app.state.engine = None


app = FastAPI(
    title="Study Design Decision API",
    description="임상시험 design pattern 결정 엔진 API",
    version=API_VERSION,
    lifespan=lifespan,
)

# CORS 설정
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(study_design_router)


@app.get("/health")
async def health_check():
    """헬스 체크"""
    engine = getattr(app.state, "engine", None)
    if engine is None:
        return {"status": "starting"}
    return {"status": "healthy", "config_hash": engine.config_hash}


@app.get("/")
async def root():
    """API 정보"""
    return {
        "name": "Study Design Decision API",
        "version": API_VERSION,
        "endpoints": [
            {"path": "/study-design", "method": "POST", "description": "Study design pattern 결정"},
            {"path": "/study-design/config", "method": "GET", "description": "설정 검증 결과 / hash"},
            {"path": "/study-design/config/reload", "method": "POST", "description": "설정 재로드"},
            {"path": "/health", "method": "GET", "description": "헬스 체크"},
        ],
    }
