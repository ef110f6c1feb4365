import logging
import uuid

from fastapi import FastAPI, Request

from tablekit.api.tables import router as tables_router
from tablekit.errors import register_error_handlers
from tablekit.logging import configure_logging

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="tablekit API")
    register_error_handlers(app)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        return response

    app.include_router(tables_router)

    @app.get("/health")
    def health_check():
        return {"status": "ok"}

    return app


app = create_app()
