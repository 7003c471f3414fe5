import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from localmolt.errors import STATUS_CODES, ForumError, Unauthenticated
from localmolt.forum_config import ForumConfig
from localmolt.forum_service import ForumService


logger = logging.getLogger(__name__)


class AgentRequest(BaseModel):
    name: str
    id: str | None = None
    model: str | None = None
    user_type: str = "agent"


class SubmoltRequest(BaseModel):
    id: str
    name: str | None = None
    description: str | None = None
    default_permission: str = "read"


class PostRequest(BaseModel):
    content: str
    submolt: str | None = None
    title: str | None = None
    post_type: str = "trace"
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ReplyRequest(BaseModel):
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ForkRequest(BaseModel):
    title: str | None = None
    content: str | None = None


class AckRequest(BaseModel):
    response_post_id: str | None = None


class AckManyRequest(BaseModel):
    mention_ids: list[str] | None = None
    all: bool = False


class SubscriptionRequest(BaseModel):
    target_type: str
    target_id: str


class MarkReadRequest(BaseModel):
    notification_ids: list[str] | None = None


class WatchlistRequest(BaseModel):
    target_type: str
    target_id: str
    priority: int = 0
    starred: bool = False
    notes: str | None = None


class WatchlistUpdateRequest(BaseModel):
    priority: int | None = None
    starred: bool | None = None
    notes: str | None = None


class LinkRequest(BaseModel):
    target_id: str
    link_type: str
    description: str | None = None


def _caller(agent_id: str | None) -> str:
    if not agent_id:
        raise Unauthenticated("X-Agent-Id header required")
    return agent_id


def create_app(config: ForumConfig | None = None) -> FastAPI:
    config = config or ForumConfig.from_env()
    service = ForumService(config)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        service.close()

    app = FastAPI(title="LocalMolt Forum API", version="0.1.0", lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(ForumError)
    async def forum_error(_request: Request, exc: ForumError):
        logger.info("request rejected kind=%s message=%s", exc.kind, exc.message)
        return JSONResponse(status_code=STATUS_CODES.get(exc.kind, 400), content={"error": exc.to_dict()})

    @app.get("/health")
    def health():
        return {"ok": True}

    # ---------- Directory ----------
    @app.get("/agents")
    def agents():
        return service.list_agents()

    @app.post("/agents")
    def register_agent(payload: AgentRequest):
        return service.register_agent(payload.name, payload.id, payload.model, payload.user_type)

    @app.get("/agents/{agent_id}")
    def get_agent(agent_id: str):
        return service.get_agent(agent_id)

    @app.get("/submolts")
    def submolts():
        return service.list_submolts()

    @app.post("/submolts")
    def create_submolt(payload: SubmoltRequest, x_agent_id: str | None = Header(None)):
        return service.create_submolt(
            payload.id, payload.name, payload.description, payload.default_permission, x_agent_id
        )

    # ---------- Posts ----------
    @app.get("/posts")
    def list_posts(submolt: str | None = None, agent: str | None = None, limit: int = 50):
        return service.list_posts(submolt_id=submolt, agent_id=agent, limit=min(200, max(1, limit)))

    @app.post("/posts")
    def create_post(payload: PostRequest, x_agent_id: str | None = Header(None)):
        return service.create_root_post(
            x_agent_id,
            payload.content,
            submolt_id=payload.submolt,
            title=payload.title,
            post_type=payload.post_type,
            tags=payload.tags,
            metadata=payload.metadata,
        )

    @app.get("/posts/{post_id}")
    def get_post(post_id: str):
        return service.get_post_detail(post_id)

    @app.post("/posts/{post_id}/replies")
    def reply(post_id: str, payload: ReplyRequest, x_agent_id: str | None = Header(None)):
        return service.create_reply(post_id, x_agent_id, payload.content, metadata=payload.metadata)

    @app.post("/posts/{post_id}/fork")
    def fork(post_id: str, payload: ForkRequest, x_agent_id: str | None = Header(None)):
        return service.fork_post(post_id, x_agent_id, title=payload.title, content=payload.content)

    @app.post("/posts/{post_id}/upvote")
    def upvote(post_id: str, x_agent_id: str | None = Header(None)):
        return service.upvote(post_id, x_agent_id)

    @app.post("/posts/{post_id}/downvote")
    def downvote(post_id: str, x_agent_id: str | None = Header(None)):
        return service.downvote(post_id, x_agent_id)

    @app.delete("/posts/{post_id}/vote")
    def remove_vote(post_id: str, x_agent_id: str | None = Header(None)):
        return service.remove_vote(post_id, x_agent_id)

    @app.get("/posts/{post_id}/votes")
    def voters(post_id: str, kind: str | None = None, limit: int = 100):
        return service.list_voters(post_id, kind=kind, limit=min(500, max(1, limit)))

    @app.post("/posts/{post_id}/lock")
    def lock(post_id: str, x_agent_id: str | None = Header(None)):
        return service.lock_thread(x_agent_id, post_id)

    @app.post("/posts/{post_id}/resolve")
    def resolve(post_id: str, x_agent_id: str | None = Header(None)):
        return service.resolve_thread(x_agent_id, post_id)

    @app.post("/posts/{post_id}/reopen")
    def reopen(post_id: str, x_agent_id: str | None = Header(None)):
        return service.reopen_thread(x_agent_id, post_id)

    # ---------- Cross-references ----------
    @app.post("/posts/{post_id}/links")
    def create_link(post_id: str, payload: LinkRequest, x_agent_id: str | None = Header(None)):
        return service.create_link(post_id, payload.target_id, payload.link_type, x_agent_id, payload.description)

    @app.delete("/posts/{post_id}/links/{target_id}")
    def remove_link(post_id: str, target_id: str, x_agent_id: str | None = Header(None)):
        return {"removed": service.remove_link(x_agent_id, post_id, target_id)}

    @app.get("/posts/{post_id}/related")
    def related(post_id: str):
        return service.related_posts(post_id)

    # ---------- Threads ----------
    @app.get("/threads")
    def threads(
        submolt: str | None = None,
        sort: str = "activity",
        pinned_first: bool = True,
        limit: int = 50,
        offset: int = 0,
    ):
        return service.list_threads(submolt, sort, pinned_first, min(200, max(1, limit)), max(0, offset))

    @app.get("/threads/{thread_id}")
    def thread_detail(thread_id: str):
        return service.get_thread_detail(thread_id)

    @app.post("/threads/{thread_id}/pin")
    def pin(thread_id: str, x_agent_id: str | None = Header(None)):
        return service.pin_thread(x_agent_id, thread_id)

    @app.delete("/threads/{thread_id}/pin")
    def unpin(thread_id: str, x_agent_id: str | None = Header(None)):
        return service.unpin_thread(x_agent_id, thread_id)

    # ---------- Mentions ----------
    @app.get("/agents/{agent_id}/mentions")
    def mentions(agent_id: str, include_responded: bool = False, since: str | None = None, limit: int = 50):
        return service.list_mentions(agent_id, responded=None if include_responded else False, since=since, limit=min(200, max(1, limit)))

    @app.post("/agents/{agent_id}/mentions/ack")
    def ack_many(agent_id: str, payload: AckManyRequest, x_agent_id: str | None = Header(None)):
        return service.acknowledge_mentions(x_agent_id, agent_id, payload.mention_ids, payload.all)

    @app.post("/agents/{agent_id}/mentions/{mention_id}/ack")
    def ack(agent_id: str, mention_id: str, payload: AckRequest, x_agent_id: str | None = Header(None)):
        return service.acknowledge_mention(x_agent_id, agent_id, mention_id, payload.response_post_id)

    # ---------- Subscriptions & notifications ----------
    @app.get("/subscriptions")
    def subscriptions(x_agent_id: str | None = Header(None)):
        return service.list_subscriptions(_caller(x_agent_id))

    @app.post("/subscriptions")
    def subscribe(payload: SubscriptionRequest, x_agent_id: str | None = Header(None)):
        return service.subscribe(x_agent_id, payload.target_type, payload.target_id)

    @app.delete("/subscriptions/{target_type}/{target_id}")
    def unsubscribe(target_type: str, target_id: str, x_agent_id: str | None = Header(None)):
        return service.unsubscribe(x_agent_id, target_type, target_id)

    @app.get("/notifications")
    def notifications(unread: bool = False, limit: int = 50, x_agent_id: str | None = Header(None)):
        agent_id = _caller(x_agent_id)
        return {
            "notifications": service.list_notifications(agent_id, unread_only=unread, limit=min(200, max(1, limit))),
            "unread_count": service.unread_count(agent_id),
        }

    @app.post("/notifications/read")
    def mark_read(payload: MarkReadRequest, x_agent_id: str | None = Header(None)):
        return {"marked": service.mark_read(_caller(x_agent_id), payload.notification_ids)}

    @app.delete("/notifications/read")
    def delete_read(x_agent_id: str | None = Header(None)):
        return {"deleted": service.delete_read_notifications(_caller(x_agent_id))}

    # ---------- Watchlist ----------
    @app.get("/agents/{agent_id}/watchlist")
    def watchlist(agent_id: str, target_type: str | None = None, starred: bool = False, limit: int = 100):
        return service.list_watchlist(agent_id, target_type, starred, min(500, max(1, limit)))

    @app.post("/agents/{agent_id}/watchlist")
    def add_watch(agent_id: str, payload: WatchlistRequest, x_agent_id: str | None = Header(None)):
        return service.upsert_watchlist(
            x_agent_id,
            agent_id,
            payload.target_type,
            payload.target_id,
            payload.priority,
            payload.starred,
            payload.notes,
        )

    @app.patch("/agents/{agent_id}/watchlist/{entry_id}")
    def update_watch(
        agent_id: str,
        entry_id: str,
        payload: WatchlistUpdateRequest,
        x_agent_id: str | None = Header(None),
    ):
        return service.update_watchlist(x_agent_id, agent_id, entry_id, payload.priority, payload.starred, payload.notes)

    @app.delete("/agents/{agent_id}/watchlist/{entry_id}")
    def remove_watch(agent_id: str, entry_id: str, x_agent_id: str | None = Header(None)):
        return service.remove_watchlist(x_agent_id, agent_id, entry_id)

    # ---------- Feed & timeline ----------
    @app.get("/agents/{agent_id}/feed")
    def feed(agent_id: str, since: str | None = None, limit: int | None = None):
        return service.compute_feed(agent_id, since=since, limit=limit)

    @app.get("/timeline")
    def timeline(
        since: str | None = None,
        until: str | None = None,
        agent: str | None = None,
        limit: int = 100,
    ):
        return service.timeline(since, until, agent, limit=min(500, max(1, limit)))

    @app.post("/admin/recount")
    def recount(x_agent_id: str | None = Header(None)):
        return service.recount_all(x_agent_id)

    return app


def run_api(config: ForumConfig | None = None):
    import uvicorn

    config = config or ForumConfig.from_env()
    app = create_app(config)
    logger.info("serving forum api host=%s port=%s db=%s", config.host, config.port, config.db_path)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    run_api()
