# Request/response surface next to the websocket relay: catch-up reads after a
# reconnect, presence and public key lookups, and a development login.
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from cipherline.core.auth import AuthError, Authenticator, TokenAuthenticator, bearer_token
from cipherline.core.directory import KeyDirectory
from cipherline.core.presence import PresenceRegistry
from cipherline.core.store import MessageStore

log = logging.getLogger("cipherline.server.api")


class LoginRequest(BaseModel):
    user_id: str = Field(alias="userId", min_length=1, max_length=128)
    model_config = ConfigDict(populate_by_name=True)


def create_app(
    *,
    store: MessageStore,
    presence: PresenceRegistry,
    directory: KeyDirectory,
    authenticator: Authenticator,
    allow_login: bool = True,
) -> FastAPI:
    app = FastAPI(title="cipherline")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def current_user(authorization: Optional[str] = Header(default=None)) -> str:
        try:
            return authenticator.verify(bearer_token(authorization))
        except AuthError as exc:
            raise HTTPException(status_code=401, detail=exc.reason)

    if allow_login and isinstance(authenticator, TokenAuthenticator):
        @app.post("/api/auth/login")
        async def login(body: LoginRequest):
            # no password check: development login only
            return {"token": authenticator.issue(body.user_id), "userId": body.user_id}

    @app.get("/api/users/{user_id}/status")
    async def user_status(user_id: str):
        try:
            online = await presence.is_online(user_id)
        except Exception:
            log.exception("Status lookup for %s failed", user_id)
            raise HTTPException(status_code=500, detail="Failed to fetch status")
        return {"online": online}

    @app.get("/api/users/{user_id}/publicKey")
    async def public_key(user_id: str):
        try:
            key = await directory.lookup(user_id)
        except Exception:
            log.exception("Public key lookup for %s failed", user_id)
            raise HTTPException(status_code=500, detail="Failed to fetch public key")
        if key is None:
            raise HTTPException(status_code=404, detail="No public key registered")
        return {"userId": user_id, "publicKey": key}

    @app.get("/api/messages")
    async def missed_messages(
        user_id: Optional[str] = Query(default=None, alias="userId"),
        user: str = Depends(current_user),
    ):
        target = user_id or user
        if target != user:
            raise HTTPException(status_code=403, detail="Cannot read another user's messages")
        try:
            messages = await store.find_by_participant(target)
        except Exception:
            log.exception("Message fetch for %s failed", target)
            raise HTTPException(status_code=500, detail="Failed to fetch messages")
        return [message.to_wire() for message in messages]

    return app


__all__ = ["create_app", "LoginRequest"]
