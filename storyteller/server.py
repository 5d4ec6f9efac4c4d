"""HTTP boundary: POST /story, POST /undo, POST /new.

Each response carries the session id header; a request without one starts a
fresh session.  A request naming an id the store no longer holds is answered
with 410 on /story and /undo (the fresh id rides along), while /new just
starts over.
"""
from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from config import settings
from storyteller.engine.session import Session, SessionController
from storyteller.nlg.prompt_composer import parse_request
from storyteller.streaming.relay import NDJSON_MEDIA_TYPE, StreamRecord, frame
from storyteller.utils.errors import (
    GENERIC_STORY_ERROR,
    SESSION_EXPIRED_CODE,
    SESSION_EXPIRED_ERROR,
    GenerationFailed,
    InvalidInput,
    describe_failure,
)

logger = logging.getLogger(__name__)


def _failure_body(exc: GenerationFailed) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": describe_failure(exc)}
    if exc.code:
        body["code"] = exc.code
    if exc.story is not None:
        body["story"] = exc.story
    return body


def create_app(controller: Optional[SessionController] = None) -> FastAPI:
    app = FastAPI(title="Infinite Story Generator", version="0.1.0")
    header = settings.SESSION_HEADER

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[header],
    )

    controller = controller if controller is not None else SessionController()
    app.state.controller = controller

    def session_for(request: Request) -> Tuple[Session, bool]:
        """The caller's session, and whether the id it sent had expired."""
        requested = request.headers.get(header)
        session = controller.store.get_or_create(requested)
        expired = bool(requested) and session.session_id != requested
        if expired:
            logger.info("Session %s expired; replaced by %s", requested, session.session_id)
        return session, expired

    def gone(session: Session) -> JSONResponse:
        return reply(session, {"error": SESSION_EXPIRED_ERROR, "code": SESSION_EXPIRED_CODE}, status_code=410)

    def reply(session: Session, content: Any, status_code: int = 200) -> JSONResponse:
        return JSONResponse(content, status_code=status_code, headers={header: session.session_id})

    async def relay(first: StreamRecord, records: AsyncIterator[StreamRecord]) -> AsyncIterator[StreamRecord]:
        yield first
        try:
            async for record in records:
                yield record
        except GenerationFailed as exc:
            logger.error("Story stream failed after start: %s", exc)
            yield StreamRecord(
                error=describe_failure(exc), code=exc.code, committed=exc.story is not None
            )
        except Exception:
            logger.exception("Unexpected error while streaming story")
            yield StreamRecord(error=GENERIC_STORY_ERROR, committed=False)

    @app.post("/story")
    async def story(request: Request, stream: Optional[bool] = None):
        session, expired = session_for(request)
        if expired:
            return gone(session)
        try:
            body = await request.json()
        except ValueError:
            body = None
        try:
            prompt = parse_request(body if isinstance(body, dict) else None)
        except InvalidInput as exc:
            return reply(session, {"error": str(exc)}, status_code=400)

        streaming = settings.STREAM_RESPONSES if stream is None else stream
        try:
            if not streaming:
                result = await controller.run_turn(session, prompt)
                return reply(session, result.as_records())
            records = controller.stream_turn(session, prompt)
            first = await records.__anext__()
        except GenerationFailed as exc:
            logger.error("Error in POST /story: %s", exc)
            return reply(session, _failure_body(exc), status_code=500)
        except Exception:
            logger.exception("Error in POST /story")
            return reply(session, {"error": GENERIC_STORY_ERROR}, status_code=500)

        return StreamingResponse(
            frame(relay(first, records)),
            media_type=NDJSON_MEDIA_TYPE,
            headers={header: session.session_id},
        )

    @app.post("/undo")
    async def undo(request: Request):
        session, expired = session_for(request)
        if expired:
            return gone(session)
        try:
            async with session.lock:
                removed = controller.undo(session)
        except Exception:
            logger.exception("Error in POST /undo")
            return reply(session, {"error": "Error occurred undoing story."}, status_code=500)
        return reply(session, {"undone": removed, "turns": len(session.log)})

    @app.post("/new")
    async def new(request: Request):
        session, _ = session_for(request)
        try:
            async with session.lock:
                controller.reset(session)
        except Exception:
            logger.exception("Error in POST /new")
            return reply(session, {"error": "Error occurred resetting story."}, status_code=500)
        return reply(session, {"turns": len(session.log)})

    return app


app = create_app()


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=settings.SERVER_HOST, port=settings.SERVER_PORT)


if __name__ == "__main__":
    main()
