"""
UI Bridge Module

HTTP surface the UI layer renders from. Every route reads from or acts on one
``ChatSession``. The bridge never mutates the conversation list itself.

Routes:
- ordered, searchable conversation rows and the unread total
- mark-read, open (navigation) and start-conversation actions
- channel state with pending banners, and Prometheus metrics
"""

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..domain.errors import LoadError
from ..metrics import CUSTOM_REGISTRY
from ..services.presenter import ConversationRow
from ..services.session import ChatSession

logger = get_logger()


class ConversationCreate(BaseModel):
    """Defines the structure for start-conversation requests"""
    recipient_id: str
    product_id: Optional[str] = None
    job_id: Optional[str] = None


class UnreadTotal(BaseModel):
    total: int


class ChannelStatus(BaseModel):
    state: str
    banners: List[str]


def get_session(request: Request) -> ChatSession:
    """Returns the session bound to this app"""
    return request.app.state.session


def create_app(session: ChatSession, manage_session: bool = True) -> FastAPI:
    """Build the bridge around a session.

    With ``manage_session`` the app lifespan starts and closes the session.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles session startup/shutdown"""
        if manage_session:
            await session.start()
        logger.info("bridge_startup_complete")

        yield

        if manage_session:
            await session.close()
        logger.info("bridge_shutdown_complete")

    app = FastAPI(
        title="Inbox Sync",
        description="Live conversation list for the UI layer",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.session = session

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    FastAPIInstrumentor.instrument_app(app)

    @app.get("/conversations", response_model=List[ConversationRow])
    async def list_conversations(
        q: str = "",
        unread_only: bool = False,
        session: ChatSession = Depends(get_session)
    ) -> List[ConversationRow]:
        """Gets the ordered conversation rows, filtered by a search term"""
        return session.presenter.rows(term=q, unread_only=unread_only)

    @app.get("/conversations/unread", response_model=UnreadTotal)
    async def total_unread(session: ChatSession = Depends(get_session)) -> UnreadTotal:
        """Total unread messages across conversations"""
        return UnreadTotal(total=session.total_unread())

    @app.post("/conversations/{conversation_id}/read", status_code=204)
    async def mark_read(
        conversation_id: str,
        session: ChatSession = Depends(get_session)
    ) -> Response:
        """Marks one conversation as read"""
        if session.store.get(conversation_id) is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        await session.mark_read(conversation_id)
        return Response(status_code=204)

    @app.post("/conversations/{conversation_id}/open", status_code=204)
    async def open_conversation(
        conversation_id: str,
        session: ChatSession = Depends(get_session)
    ) -> Response:
        """Focuses a conversation and fires the navigation callback"""
        if session.store.get(conversation_id) is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        await session.select(conversation_id)
        return Response(status_code=204)

    @app.post("/conversations", response_model=ConversationRow)
    async def start_conversation(
        body: ConversationCreate,
        session: ChatSession = Depends(get_session)
    ) -> ConversationRow:
        """Starts or reuses a conversation with a recipient"""
        try:
            conversation = await session.start_conversation(
                body.recipient_id, product_id=body.product_id, job_id=body.job_id
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except LoadError as e:
            logger.error("start_conversation_error", recipient_id=body.recipient_id, error=str(e))
            if e.is_auth_error:
                raise HTTPException(status_code=401, detail="Please sign in again")
            if e.status_code == 404:
                raise HTTPException(status_code=404, detail="Recipient not found")
            raise HTTPException(status_code=502, detail="Failed to start conversation")

        for row in session.presenter.rows():
            if row.id == conversation.id:
                return row
        # Not on the first page yet; render the created conversation directly
        return ConversationRow(
            id=conversation.id,
            title=session.presenter.title_for(conversation),
            preview=session.presenter.preview_for(conversation),
            time_label=session.presenter.relative_time(conversation),
            unread_count=conversation.unread_count,
            related_entity=conversation.related_entity,
        )

    @app.post("/conversations/refresh", status_code=204)
    async def refresh(session: ChatSession = Depends(get_session)) -> Response:
        """Retry affordance: reload the snapshot"""
        try:
            await session.refresh()
        except LoadError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return Response(status_code=204)

    @app.get("/channel", response_model=ChannelStatus)
    async def channel_status(session: ChatSession = Depends(get_session)) -> ChannelStatus:
        """Connection state and pending banners"""
        return ChannelStatus(state=session.channel.state.value, banners=list(session.banners))

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    return app
