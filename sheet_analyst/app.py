from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sheet_analyst.application import AnalysisService, configure_analysis_service
from sheet_analyst.core.errors import SheetAnalysisError
from sheet_analyst.core.logconfig import configure_logging
from sheet_analyst.core.settings import Settings
from sheet_analyst.infrastructure import OpenAIChatModel, configure_language_model
from sheet_analyst.routes import sheets

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, *, service: AnalysisService | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = FastAPI(title="Sheet Analyst API", version="0.1.0")

    if settings.openai_api_key:
        model = OpenAIChatModel(
            settings.openai_api_key,
            model=settings.llm_model,
            base_url=settings.openai_base_url,
            timeout=settings.llm_timeout_s,
            temperature=settings.llm_temperature,
        )
        configure_language_model(model)
    else:
        logger.warning("event=startup llm=unconfigured reason=missing_api_key")

    configure_analysis_service(service or AnalysisService(settings))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SheetAnalysisError)
    async def handle_analysis_error(request: Request, exc: SheetAnalysisError) -> JSONResponse:
        logger.warning("event=request status=failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.http_status, content={"status": "failed", "error": exc.to_dict()})

    app.include_router(sheets.router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Sheet Analyst API",
                "docs": "/docs",
                "analyze": "/api/sheets/analyze",
            }
        )

    return app


app = create_app()
