from __future__ import annotations

import logging
import time
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Annotated, Any

from fastapi import Body, Cookie, Depends, FastAPI, Header, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from .admin import ApprovalWorkflow
from .auth import IdentityGate, token_from_headers, verify_session_token
from .config import Settings, get_settings
from .db import SessionLocal, init_db
from .errors import InboxError, NotFound
from .language import LazyChatModel, TranslationAdapter, build_translation_model
from .logging_utils import RequestLoggingMiddleware, attach_log_data, setup_logging
from .metrics import get_metrics, get_metrics_content_type
from .pipeline import InboundPipeline, OutboundPipeline, failure_detail
from .schemas import (
    ConversationOut,
    ConversationUpdate,
    HealthResponse,
    MessageOut,
    SendPartialResponse,
    SendResponse,
    SuccessResponse,
    VolunteerActionRequest,
    VolunteerOut,
    VolunteerPresence,
)
from .sms import EMPTY_TWIML
from .store import ConversationStore, VolunteerStore, is_online
from .twilio_client import Delivered, SmsSender, TwilioSender

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Collaborators shared by every request; tests build their own."""

    settings: Settings
    translator: TranslationAdapter
    sender: SmsSender
    session_factory: sessionmaker[Session] = SessionLocal
    sleep: Callable[[float], None] = field(default=time.sleep)


def build_services(settings: Settings) -> Services:
    return Services(
        settings=settings,
        translator=TranslationAdapter(LazyChatModel(lambda: build_translation_model(settings))),
        sender=TwilioSender(settings),
    )


# --- Dependencies ---


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_db(services: Annotated[Services, Depends(get_services)]) -> Generator[Session, None, None]:
    db = services.session_factory()
    try:
        yield db
    finally:
        db.close()


def current_volunteer_id(
    services: Annotated[Services, Depends(get_services)],
    authorization: Annotated[str | None, Header()] = None,
    session: Annotated[str | None, Cookie()] = None,
) -> str:
    token = token_from_headers(authorization, session)
    return verify_session_token(token, services.settings.session_secret)


def approved_volunteer_id(
    volunteer_id: Annotated[str, Depends(current_volunteer_id)],
    db: Annotated[Session, Depends(get_db)],
) -> str:
    IdentityGate(VolunteerStore(db)).require_approved(volunteer_id)
    return volunteer_id


def webhook_url(request: Request, settings: Settings) -> str:
    """The URL the carrier signed: the public base URL when set, else the request URL."""
    if not settings.public_base_url:
        return str(request.url)
    url = settings.public_base_url.rstrip("/") + request.url.path
    if request.url.query:
        url += "?" + request.url.query
    return url


DbSession = Annotated[Session, Depends(get_db)]
ServicesDep = Annotated[Services, Depends(get_services)]
CallerId = Annotated[str, Depends(current_volunteer_id)]
ApprovedId = Annotated[str, Depends(approved_volunteer_id)]


def _load_conversation(db: Session, conversation_id: int):
    conversation = ConversationStore(db).get(conversation_id)
    if conversation is None:
        raise NotFound("Conversation not found")
    return conversation


def create_app(services: Services | None = None) -> FastAPI:
    """
    Build the FastAPI app.

    Without ``services`` the production collaborators (ChatOpenAI, Twilio,
    the configured database) are built at startup and tables are created.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            settings = get_settings()
            setup_logging(settings.log_level)
            init_db()
            app.state.services = build_services(settings)
        yield

    app = FastAPI(title="sms-inbox", version="0.1.0", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(RequestLoggingMiddleware)

    @app.exception_handler(InboxError)
    async def inbox_error_handler(request: Request, exc: InboxError) -> JSONResponse:
        attach_log_data(request, error=type(exc).__name__)
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        if any(err.get("type") == "missing" for err in errors):
            detail = "Missing required fields"
        else:
            detail = str(errors[0].get("msg", "Invalid request")) if errors else "Invalid request"
        return JSONResponse({"error": detail}, status_code=400)

    @app.exception_handler(SQLAlchemyError)
    async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error(f"Unhandled database error: {exc}")
        return JSONResponse({"error": "Database error"}, status_code=500)

    # --- Health & metrics ---

    @app.get("/health/live", response_model=HealthResponse)
    def health_live() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    def health_ready(response: Response, services: ServicesDep, db: DbSession) -> HealthResponse:
        """Ready only if the database answers and the webhook secret is configured."""
        if not services.settings.twilio_auth_token:
            response.status_code = 503
            return HealthResponse(status="not_ready", reason="TWILIO_AUTH_TOKEN not configured")
        try:
            db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            response.status_code = 503
            return HealthResponse(status="not_ready", reason="Database not reachable")
        return HealthResponse(status="ready")

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(content=get_metrics(), media_type=get_metrics_content_type())

    # --- Carrier webhook ---

    @app.post("/sms/inbound")
    async def sms_inbound(
        request: Request,
        services: ServicesDep,
        db: DbSession,
        x_twilio_signature: Annotated[str | None, Header()] = None,
    ) -> Response:
        """
        Twilio messaging webhook.

        Returns empty TwiML whenever the message is stored, including when
        translation was unavailable; 400/403 for rejected calls, 500 only
        when the message itself could not be stored.
        """
        form = await request.form()
        params = {key: str(value) for key, value in form.items()}
        pipeline = InboundPipeline(
            ConversationStore(db),
            services.translator,
            auth_token=services.settings.twilio_auth_token,
        )
        result = await run_in_threadpool(
            pipeline.handle, webhook_url(request, services.settings), params, x_twilio_signature
        )
        attach_log_data(
            request,
            message_sid=params.get("MessageSid"),
            dup=result.duplicate,
            translation_error=result.translation_error,
        )
        return Response(content=EMPTY_TWIML, media_type="text/xml")

    # --- Volunteer replies ---

    @app.post("/api/send")
    def send_reply(
        request: Request,
        payload: Annotated[dict[str, Any], Body()],
        caller_id: CallerId,
        services: ServicesDep,
        db: DbSession,
    ) -> JSONResponse:
        store = ConversationStore(db)
        pipeline = OutboundPipeline(
            store,
            IdentityGate(VolunteerStore(db)),
            services.translator,
            services.sender,
            max_attempts=services.settings.delivery_max_attempts,
            backoff_seconds=services.settings.delivery_backoff_seconds,
            sleep=services.sleep,
        )
        result = pipeline.send(caller_id, payload)
        message = MessageOut.model_validate(result.message)
        attach_log_data(request, message_id=message.id, delivery_status=message.status)

        if isinstance(result.delivery, Delivered):
            body: SendResponse | SendPartialResponse = SendResponse(
                message=message, delivery_id=result.delivery.delivery_id
            )
        else:
            body = SendPartialResponse(error=failure_detail(result.delivery), message=message)
        return JSONResponse(body.model_dump(mode="json", by_alias=True))

    @app.delete("/api/messages/{message_id}", response_model=SuccessResponse)
    def discard_failed_message(
        message_id: int, caller_id: ApprovedId, db: DbSession
    ) -> SuccessResponse:
        ConversationStore(db).discard_failed(message_id, caller_id)
        return SuccessResponse()

    # --- Conversations ---

    @app.get("/api/conversations", response_model=list[ConversationOut])
    def list_conversations(_: ApprovedId, db: DbSession, archived: bool = False) -> Any:
        return ConversationStore(db).list_conversations(archived=archived)

    @app.get("/api/conversations/{conversation_id}", response_model=ConversationOut)
    def get_conversation(conversation_id: int, _: ApprovedId, db: DbSession) -> Any:
        return _load_conversation(db, conversation_id)

    @app.get("/api/conversations/{conversation_id}/messages", response_model=list[MessageOut])
    def list_messages(conversation_id: int, _: ApprovedId, db: DbSession) -> Any:
        _load_conversation(db, conversation_id)
        return ConversationStore(db).list_messages(conversation_id)

    @app.patch("/api/conversations/{conversation_id}", response_model=ConversationOut)
    def update_conversation(
        conversation_id: int, update: ConversationUpdate, _: ApprovedId, db: DbSession
    ) -> Any:
        store = ConversationStore(db)
        conversation = _load_conversation(db, conversation_id)
        if update.contact_name is not None:
            store.rename(conversation, update.contact_name)
        if update.archived is not None:
            store.set_archived(conversation, update.archived)
        return conversation

    # --- Volunteers & presence ---

    @app.post("/api/presence", response_model=SuccessResponse)
    def heartbeat(caller_id: CallerId, db: DbSession) -> SuccessResponse:
        volunteers = VolunteerStore(db)
        volunteer = volunteers.get(caller_id)
        if volunteer is None:
            raise NotFound("Volunteer not found")
        volunteers.mark_seen(volunteer)
        return SuccessResponse()

    @app.get("/api/volunteers", response_model=list[VolunteerPresence])
    def list_volunteers(_: ApprovedId, services: ServicesDep, db: DbSession) -> Any:
        window = services.settings.presence_window_seconds
        return [
            VolunteerPresence(
                id=v.id,
                name=v.name,
                email=v.email,
                last_seen=v.last_seen,
                online=is_online(v, window),
            )
            for v in VolunteerStore(db).list_approved()
        ]

    # --- Admin approval ---

    def _workflow(db: Session) -> ApprovalWorkflow:
        volunteers = VolunteerStore(db)
        return ApprovalWorkflow(IdentityGate(volunteers), volunteers)

    @app.post("/api/admin/approve", response_model=SuccessResponse)
    def approve_volunteer(
        body: VolunteerActionRequest, caller_id: CallerId, db: DbSession
    ) -> SuccessResponse:
        _workflow(db).approve(caller_id, body.volunteer_id)
        return SuccessResponse()

    @app.post("/api/admin/reject", response_model=SuccessResponse)
    def reject_volunteer(
        body: VolunteerActionRequest, caller_id: CallerId, db: DbSession
    ) -> SuccessResponse:
        _workflow(db).reject(caller_id, body.volunteer_id)
        return SuccessResponse()

    @app.get("/api/admin/pending", response_model=list[VolunteerOut])
    def pending_volunteers(caller_id: CallerId, db: DbSession) -> Any:
        return _workflow(db).pending(caller_id)

    return app


app = create_app()
