from __future__ import annotations
import asyncio
import html
import json
import logging
import os
import re
import secrets
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Deque, Dict, List, Literal, Mapping, Optional
from urllib.parse import urlencode

import requests
from fastapi import Depends, FastAPI, Header, HTTPException, Request as FastAPIRequest
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint,
    create_engine, func,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sse_starlette.sse import EventSourceResponse

# =====================================
# Config
# =====================================
DB_URL = os.getenv("DATABASE_URL", "sqlite:////data/db.sqlite")

# Authentication token for admin endpoints and the bot worker.
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "change-me")

SETTINGS_ENV_MAP: Dict[str, str] = {
    "twitch_client_id": "TWITCH_CLIENT_ID",
    "twitch_client_secret": "TWITCH_CLIENT_SECRET",
    "bot_redirect_uri": "BOT_TWITCH_REDIRECT_URI",
    "bot_app_scopes": "BOT_APP_SCOPES",
    "super_user": "SUPER_USER",
    "openweathermap_api_key": "OPENWEATHERMAP_API_KEY",
    "translate_url": "TRANSLATE_URL",
    "spotify_client_id": "SPOTIFY_CLIENT_ID",
    "spotify_client_secret": "SPOTIFY_CLIENT_SECRET",
    "spotify_redirect_uri": "SPOTIFY_REDIRECT_URI",
}

SETTINGS_DEFAULTS: Dict[str, Optional[str]] = {
    "bot_app_scopes": (
        "user:read:chat user:write:chat user:bot channel:read:redemptions "
        "channel:edit:commercial moderator:manage:banned_users"
    ),
}

# Settings handed to the bot worker along with its credentials.
BOT_SETTING_KEYS = (
    "super_user",
    "openweathermap_api_key",
    "translate_url",
    "spotify_client_id",
    "spotify_client_secret",
)

SPOTIFY_SCOPES = "user-read-currently-playing user-read-playback-state user-read-recently-played"
DEFAULT_PREFIX = "!"
LOG_HISTORY_SIZE = 200
API_VERSION = "0.1.0"

_bot_log_listeners: set[asyncio.Queue[str]] = set()
_bot_log_history: Deque[Dict[str, Any]] = deque(maxlen=LOG_HISTORY_SIZE)
_oauth_states: dict[str, Dict[str, Any]] = {}

logger = logging.getLogger(__name__)

engine = create_engine(DB_URL, connect_args={"check_same_thread": False} if DB_URL.startswith("sqlite") else {})
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


def utcnow() -> datetime:
    # Columns hold naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =====================================
# Models
# =====================================
class AppSetting(Base):
    __tablename__ = "app_settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class BotConfig(Base):
    __tablename__ = "bot_config"
    id = Column(Integer, primary_key=True)
    login = Column(String, nullable=True)
    display_name = Column(String, nullable=True)
    scopes = Column(Text, nullable=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    enabled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Channel(Base):
    __tablename__ = "channels"
    id = Column(Integer, primary_key=True)
    channel_name = Column(String, unique=True, nullable=False)
    prefix = Column(String, default=DEFAULT_PREFIX, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    commands = relationship("CustomCommand", cascade="all, delete-orphan", back_populates="channel")
    redeems = relationship("RedeemTrigger", cascade="all, delete-orphan")
    hitman_targets = relationship("HitmanTarget", cascade="all, delete-orphan")
    spotify = relationship("SpotifyCredential", cascade="all, delete-orphan", uselist=False)


class CustomCommand(Base):
    __tablename__ = "commands"
    __table_args__ = (UniqueConstraint("channel_id", "trigger", name="uq_command_channel_trigger"),)
    id = Column(Integer, primary_key=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False)
    trigger = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    permission = Column(String, default="all", nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    channel = relationship("Channel", back_populates="commands")


class RedeemTrigger(Base):
    __tablename__ = "redeem_triggers"
    __table_args__ = (UniqueConstraint("channel_id", "title", name="uq_redeem_channel_title"),)
    id = Column(Integer, primary_key=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False)
    title = Column(String, nullable=False)
    action = Column(Text, nullable=False)


class HitmanTarget(Base):
    __tablename__ = "hitman_targets"
    __table_args__ = (UniqueConstraint("channel_id", "user", name="uq_hitman_channel_user"),)
    id = Column(Integer, primary_key=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), nullable=False)
    user = Column(String, nullable=False)
    completed = Column(Boolean, default=False, nullable=False)
    protected = Column(Boolean, default=False, nullable=False)


class SpotifyCredential(Base):
    __tablename__ = "spotify_credentials"
    id = Column(Integer, primary_key=True)
    channel_id = Column(Integer, ForeignKey("channels.id", ondelete="CASCADE"), unique=True, nullable=False)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=True)


Base.metadata.create_all(bind=engine)


# =====================================
# Settings
# =====================================
def _load_settings_from_db() -> Dict[str, Optional[str]]:
    db = SessionLocal()
    try:
        rows = db.query(AppSetting).all()
        values = {row.key: row.value for row in rows}
    finally:
        db.close()
    for key, default in SETTINGS_DEFAULTS.items():
        values.setdefault(key, default)
    return values


class SettingsStore:
    __slots__ = ("_cache", "_lock")

    def __init__(self) -> None:
        self._cache: Optional[Dict[str, Optional[str]]] = None
        self._lock = Lock()

    def snapshot(self) -> Dict[str, Optional[str]]:
        with self._lock:
            if self._cache is None:
                self._cache = _load_settings_from_db()
            return dict(self._cache)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.snapshot().get(key, default)
        if value is None:
            return default
        value_str = str(value).strip()
        return value_str or default

    def get_list(self, key: str) -> list[str]:
        raw = self.get(key)
        if not raw:
            return []
        return [part for part in re.split(r"[\s,]+", raw) if part]

    def invalidate(self) -> None:
        with self._lock:
            self._cache = None


settings_store = SettingsStore()


def bootstrap_settings_from_env() -> None:
    db = SessionLocal()
    try:
        existing = {row.key: row for row in db.query(AppSetting).all()}
        changed = False
        for key, env_name in SETTINGS_ENV_MAP.items():
            env_value = (os.getenv(env_name) or "").strip()
            if not env_value:
                continue
            row = existing.get(key)
            if row is None:
                db.add(AppSetting(key=key, value=env_value))
                changed = True
            elif not row.value:
                row.value = env_value
                changed = True
        for key, default in SETTINGS_DEFAULTS.items():
            if key not in existing:
                db.add(AppSetting(key=key, value=default))
                changed = True
        if changed:
            db.commit()
    finally:
        db.close()
    settings_store.invalidate()


def set_settings(db: Session, updates: Mapping[str, Optional[str]]) -> Dict[str, Optional[str]]:
    for key, value in updates.items():
        normalized = value.strip() if isinstance(value, str) and value.strip() else None
        row = db.get(AppSetting, key)
        if row:
            row.value = normalized
        else:
            db.add(AppSetting(key=key, value=normalized))
    db.commit()
    settings_store.invalidate()
    return settings_store.snapshot()


def get_setting(key: str, default: Optional[str] = None) -> Optional[str]:
    return settings_store.get(key, default)


bootstrap_settings_from_env()


# =====================================
# Schemas
# =====================================
PermissionName = Literal["all", "subs", "mods", "super"]


class ChannelIn(BaseModel):
    channel_name: str = Field(min_length=1)
    prefix: str = Field(default=DEFAULT_PREFIX, min_length=1, max_length=8)


class ChannelOut(BaseModel):
    channel_name: str
    prefix: str

    class Config:
        from_attributes = True


class PrefixIn(BaseModel):
    prefix: str = Field(min_length=1, max_length=8)


class CommandIn(BaseModel):
    trigger: str = Field(min_length=1)
    body: str = Field(min_length=1)
    permission: PermissionName = "all"


class CommandOut(BaseModel):
    trigger: str
    body: str
    permission: str

    class Config:
        from_attributes = True


class RedeemIn(BaseModel):
    title: str = Field(min_length=1)
    action: str = Field(min_length=1)


class RedeemOut(BaseModel):
    title: str
    action: str

    class Config:
        from_attributes = True


class HitmanOut(BaseModel):
    user: str
    protected: bool
    completed: bool

    class Config:
        from_attributes = True


class HitmanUpdate(BaseModel):
    protected: bool
    completed: Optional[bool] = None


class SpotifyTokensOut(BaseModel):
    access_token: Optional[str]
    refresh_token: str
    expires_at: Optional[datetime]


class SpotifyTokenUpdate(BaseModel):
    access_token: str
    expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = None


class SpotifyRefreshOut(BaseModel):
    channel: str
    refresh_token: str


class BotConfigOut(BaseModel):
    login: Optional[str]
    display_name: Optional[str]
    scopes: List[str] = Field(default_factory=list)
    enabled: bool
    expires_at: Optional[datetime]
    token_present: bool = False
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    bot_user_id: Optional[str] = None
    super_user: Optional[str] = None
    openweathermap_api_key: Optional[str] = None
    translate_url: Optional[str] = None
    spotify_client_id: Optional[str] = None
    spotify_client_secret: Optional[str] = None


class BotConfigUpdate(BaseModel):
    enabled: Optional[bool] = None
    scopes: Optional[List[str]] = None
    display_name: Optional[str] = None
    login: Optional[str] = None
    bot_user_id: Optional[str] = None


class BotTokenUpdateIn(BaseModel):
    access_token: str
    refresh_token: str
    expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)


class BotLogEventIn(BaseModel):
    message: str
    level: str = Field(default="info")
    source: Optional[str] = None
    timestamp: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


class BotLogAckOut(BaseModel):
    success: bool


app = FastAPI(title="Twitch Command Bot Backend", version=API_VERSION)


# =====================================
# Helpers
# =====================================
def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_token(x_admin_token: str = Header(None)):
    if x_admin_token != ADMIN_TOKEN:
        raise HTTPException(status_code=401, detail="invalid admin token")


def normalize_channel(name: str) -> str:
    return name.strip().lstrip("#").lower()


def get_channel(channel: str, db: Session) -> Channel:
    """Return the channel row, matching the name case-insensitively."""
    ch = (
        db.query(Channel)
        .filter(func.lower(Channel.channel_name) == normalize_channel(channel))
        .one_or_none()
    )
    if not ch:
        raise HTTPException(status_code=404, detail="channel not found")
    return ch


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Type {type(value)!r} not serializable")


def _broadcast_bot_log(event: Dict[str, Any]) -> None:
    _bot_log_history.append(event)
    payload = json.dumps(event, default=_json_default)
    stale: list[asyncio.Queue[str]] = []
    for queue in list(_bot_log_listeners):
        try:
            queue.put_nowait(payload)
        except asyncio.QueueFull:
            stale.append(queue)
    for queue in stale:
        _bot_log_listeners.discard(queue)


def _normalize_scope_list(scopes) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for scope in scopes:
        scope_value = scope.strip()
        if scope_value and scope_value not in seen:
            seen.add(scope_value)
            result.append(scope_value)
    return result


def _get_bot_config(db: Session) -> BotConfig:
    cfg = db.query(BotConfig).order_by(BotConfig.id.asc()).first()
    if not cfg:
        scopes = " ".join(settings_store.get_list("bot_app_scopes"))
        cfg = BotConfig(scopes=scopes or None, enabled=False)
        db.add(cfg)
        db.commit()
        db.refresh(cfg)
    return cfg


def _serialize_bot_config(cfg: BotConfig, *, include_tokens: bool = False) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "login": cfg.login,
        "display_name": cfg.display_name,
        "scopes": (cfg.scopes or "").split(),
        "enabled": bool(cfg.enabled),
        "expires_at": cfg.expires_at,
        "token_present": bool(cfg.access_token and cfg.refresh_token),
    }
    if include_tokens:
        data["access_token"] = cfg.access_token
        data["refresh_token"] = cfg.refresh_token
        data["client_id"] = get_setting("twitch_client_id")
        data["client_secret"] = get_setting("twitch_client_secret")
        data["bot_user_id"] = get_setting("bot_user_id")
        for key in BOT_SETTING_KEYS:
            data[key] = get_setting(key)
    return data


def _cleanup_oauth_states() -> None:
    cutoff = time.time() - 600
    stale = [key for key, meta in _oauth_states.items() if meta.get("created_at", 0) < cutoff]
    for key in stale:
        _oauth_states.pop(key, None)


def _new_oauth_state(kind: str, **extra: Any) -> str:
    _cleanup_oauth_states()
    nonce = secrets.token_urlsafe(16)
    _oauth_states[nonce] = {"kind": kind, "created_at": time.time(), **extra}
    return nonce


def _pop_oauth_state(state: str, kind: str) -> Dict[str, Any]:
    pending = _oauth_states.pop(state or "", None)
    if not pending or pending.get("kind") != kind:
        raise HTTPException(status_code=400, detail="state expired or invalid")
    return pending


def _redirect_uri(request: FastAPIRequest, setting: str, route: str) -> str:
    return get_setting(setting) or str(request.url_for(route))


def _html_page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    page = f"""<!DOCTYPE html>
<html lang=\"en\">
  <head>
    <meta charset=\"utf-8\" />
    <title>{html.escape(title)}</title>
    <style>
      body {{ font-family: sans-serif; margin: 2rem; }}
      table {{ border-collapse: collapse; }}
      td, th {{ border: 1px solid #ccc; padding: 0.3rem 0.6rem; text-align: left; }}
    </style>
  </head>
  <body>
    <h1>{html.escape(title)}</h1>
    {body}
  </body>
</html>
"""
    return HTMLResponse(content=page, status_code=status_code)


# =====================================
# Routes: System
# =====================================
@app.get("/system/health")
def health():
    try:
        with engine.connect() as _:
            pass
        return {"status": "ok"}
    except Exception as e:
        raise HTTPException(500, detail=str(e))


@app.get("/", response_class=HTMLResponse)
def index():
    return _html_page(
        "Command bot",
        "<p>Open <code>/commands/&lt;channel&gt;</code> to list a channel's commands "
        "or <code>/auth</code> to authorize the bot account.</p>",
    )


@app.get("/commands/{channel}", response_class=HTMLResponse)
def commands_page(channel: str, db: Session = Depends(get_db)):
    try:
        ch = get_channel(channel, db)
    except HTTPException:
        return _html_page("Unknown channel", f"<p>{html.escape(channel)} is not registered.</p>", 404)
    rows = "".join(
        f"<tr><td>{html.escape(ch.prefix + cmd.trigger)}</td>"
        f"<td>{html.escape(cmd.body)}</td><td>{html.escape(cmd.permission)}</td></tr>"
        for cmd in sorted(ch.commands, key=lambda c: c.trigger)
    )
    if not rows:
        return _html_page(f"Commands for {ch.channel_name}", "<p>No custom commands.</p>")
    table = f"<table><tr><th>Command</th><th>Action</th><th>Permission</th></tr>{rows}</table>"
    return _html_page(f"Commands for {ch.channel_name}", table)


# =====================================
# Routes: Bot
# =====================================
@app.get(
    "/bot/config",
    response_model=BotConfigOut,
    response_model_exclude_none=True,
    dependencies=[Depends(require_token)],
)
def bot_config(db: Session = Depends(get_db)):
    return _serialize_bot_config(_get_bot_config(db), include_tokens=True)


@app.put(
    "/bot/config",
    response_model=BotConfigOut,
    response_model_exclude_none=True,
    dependencies=[Depends(require_token)],
)
def update_bot_config(payload: BotConfigUpdate, db: Session = Depends(get_db)):
    cfg = _get_bot_config(db)
    data = payload.model_dump(exclude_none=True)
    if "enabled" in data:
        cfg.enabled = bool(data["enabled"])
    if "scopes" in data:
        cfg.scopes = " ".join(_normalize_scope_list(data["scopes"])) or None
    if "display_name" in data:
        cfg.display_name = data["display_name"].strip() or None
    if "login" in data:
        cfg.login = data["login"].strip() or None
    if "bot_user_id" in data:
        set_settings(db, {"bot_user_id": data["bot_user_id"]})
    cfg.updated_at = utcnow()
    db.commit()
    db.refresh(cfg)
    return _serialize_bot_config(cfg, include_tokens=True)


@app.post(
    "/bot/config/tokens",
    response_model=BotConfigOut,
    response_model_exclude_none=True,
    dependencies=[Depends(require_token)],
)
def update_bot_tokens(payload: BotTokenUpdateIn, db: Session = Depends(get_db)):
    cfg = _get_bot_config(db)
    cfg.access_token = payload.access_token
    cfg.refresh_token = payload.refresh_token
    cfg.expires_at = payload.expires_at
    scopes_value = " ".join(_normalize_scope_list(payload.scopes)) or None
    if scopes_value:
        cfg.scopes = scopes_value
    cfg.updated_at = utcnow()
    db.commit()
    db.refresh(cfg)
    return _serialize_bot_config(cfg, include_tokens=True)


@app.post("/bot/logs", response_model=BotLogAckOut, dependencies=[Depends(require_token)])
def push_bot_log(event: BotLogEventIn):
    timestamp = event.timestamp or utcnow()
    _broadcast_bot_log(
        {
            "type": "log",
            "level": event.level,
            "message": event.message,
            "source": event.source,
            "timestamp": timestamp,
            "metadata": event.metadata or {},
        }
    )
    return {"success": True}


@app.get("/bot/logs", dependencies=[Depends(require_token)])
def list_bot_logs(limit: int = 50):
    if limit <= 0:
        return []
    return list(_bot_log_history)[-limit:]


@app.get("/bot/logs/stream", dependencies=[Depends(require_token)])
async def stream_bot_logs():
    queue: asyncio.Queue[str] = asyncio.Queue(maxsize=1000)
    _bot_log_listeners.add(queue)

    async def event_stream():
        try:
            yield {"event": "log", "data": json.dumps({"type": "ready"})}
            while True:
                msg = await queue.get()
                yield {"event": "log", "data": msg}
        finally:
            _bot_log_listeners.discard(queue)

    return EventSourceResponse(
        event_stream(),
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )


# =====================================
# Routes: Channels
# =====================================
@app.get("/channels", response_model=List[ChannelOut])
def list_channels(db: Session = Depends(get_db)):
    return db.query(Channel).order_by(Channel.channel_name).all()


@app.post("/channels", response_model=ChannelOut, dependencies=[Depends(require_token)])
def add_channel(payload: ChannelIn, db: Session = Depends(get_db)):
    name = normalize_channel(payload.channel_name)
    if db.query(Channel).filter(func.lower(Channel.channel_name) == name).one_or_none():
        raise HTTPException(status_code=409, detail="channel already exists")
    ch = Channel(channel_name=name, prefix=payload.prefix)
    db.add(ch)
    db.commit()
    db.refresh(ch)
    logger.info("registered channel %s", name)
    return ch


@app.get("/channels/{channel}", response_model=ChannelOut)
def get_channel_info(channel: str, db: Session = Depends(get_db)):
    return get_channel(channel, db)


@app.put("/channels/{channel}/prefix", response_model=ChannelOut, dependencies=[Depends(require_token)])
def set_channel_prefix(channel: str, payload: PrefixIn, db: Session = Depends(get_db)):
    ch = get_channel(channel, db)
    ch.prefix = payload.prefix
    db.commit()
    db.refresh(ch)
    return ch


@app.delete("/channels/{channel}", dependencies=[Depends(require_token)])
def delete_channel(channel: str, db: Session = Depends(get_db)):
    ch = get_channel(channel, db)
    db.delete(ch)
    db.commit()
    logger.info("removed channel %s", ch.channel_name)
    return {"success": True}


# =====================================
# Routes: Commands
# =====================================
@app.get("/channels/{channel}/commands", response_model=List[str])
def list_commands(channel: str, db: Session = Depends(get_db)):
    ch = get_channel(channel, db)
    return sorted(cmd.trigger for cmd in ch.commands)


@app.post("/channels/{channel}/commands", response_model=CommandOut, dependencies=[Depends(require_token)])
def add_command(channel: str, payload: CommandIn, db: Session = Depends(get_db)):
    ch = get_channel(channel, db)
    cmd = CustomCommand(channel_id=ch.id, trigger=payload.trigger, body=payload.body, permission=payload.permission)
    db.add(cmd)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="command already exists")
    db.refresh(cmd)
    return cmd


def _get_command(ch: Channel, trigger: str, db: Session) -> CustomCommand:
    cmd = db.query(CustomCommand).filter_by(channel_id=ch.id, trigger=trigger).one_or_none()
    if not cmd:
        raise HTTPException(status_code=404, detail="command not found")
    return cmd


@app.get("/channels/{channel}/commands/{trigger}", response_model=CommandOut)
def get_command(channel: str, trigger: str, db: Session = Depends(get_db)):
    return _get_command(get_channel(channel, db), trigger, db)


@app.delete("/channels/{channel}/commands/{trigger}", dependencies=[Depends(require_token)])
def delete_command(channel: str, trigger: str, db: Session = Depends(get_db)):
    cmd = _get_command(get_channel(channel, db), trigger, db)
    db.delete(cmd)
    db.commit()
    return {"success": True}


# =====================================
# Routes: Redeems
# =====================================
@app.post("/channels/{channel}/redeems", response_model=RedeemOut, dependencies=[Depends(require_token)])
def add_redeem(channel: str, payload: RedeemIn, db: Session = Depends(get_db)):
    ch = get_channel(channel, db)
    redeem = RedeemTrigger(channel_id=ch.id, title=payload.title, action=payload.action)
    db.add(redeem)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="redeem already exists")
    db.refresh(redeem)
    return redeem


def _get_redeem(ch: Channel, title: str, db: Session) -> RedeemTrigger:
    redeem = db.query(RedeemTrigger).filter_by(channel_id=ch.id, title=title).one_or_none()
    if not redeem:
        raise HTTPException(status_code=404, detail="redeem not found")
    return redeem


@app.get("/channels/{channel}/redeems/{title}", response_model=RedeemOut)
def get_redeem(channel: str, title: str, db: Session = Depends(get_db)):
    return _get_redeem(get_channel(channel, db), title, db)


@app.delete("/channels/{channel}/redeems/{title}", dependencies=[Depends(require_token)])
def delete_redeem(channel: str, title: str, db: Session = Depends(get_db)):
    redeem = _get_redeem(get_channel(channel, db), title, db)
    db.delete(redeem)
    db.commit()
    return {"success": True}


# =====================================
# Routes: Hitman
# =====================================
def _find_target(ch: Channel, user: str, db: Session) -> Optional[HitmanTarget]:
    return (
        db.query(HitmanTarget)
        .filter(HitmanTarget.channel_id == ch.id, func.lower(HitmanTarget.user) == user.lower())
        .one_or_none()
    )


@app.post("/channels/{channel}/hitman/{user}", response_model=HitmanOut, dependencies=[Depends(require_token)])
def add_hitman(channel: str, user: str, db: Session = Depends(get_db)):
    ch = get_channel(channel, db)
    target = _find_target(ch, user, db)
    if target is None:
        target = HitmanTarget(channel_id=ch.id, user=user.lower(), protected=False)
        db.add(target)
    target.completed = False
    db.commit()
    db.refresh(target)
    return target


@app.get("/channels/{channel}/hitman/{user}", response_model=HitmanOut)
def get_hitman(channel: str, user: str, db: Session = Depends(get_db)):
    target = _find_target(get_channel(channel, db), user, db)
    if target is None:
        raise HTTPException(status_code=404, detail="hitman target not found")
    return target


@app.put("/channels/{channel}/hitman/{user}", response_model=HitmanOut, dependencies=[Depends(require_token)])
def set_hitman(channel: str, user: str, payload: HitmanUpdate, db: Session = Depends(get_db)):
    ch = get_channel(channel, db)
    target = _find_target(ch, user, db)
    if target is None:
        target = HitmanTarget(channel_id=ch.id, user=user.lower(), completed=False)
        db.add(target)
    target.protected = payload.protected
    if payload.completed is not None:
        target.completed = payload.completed
    db.commit()
    db.refresh(target)
    return target


# =====================================
# Routes: Spotify
# =====================================
@app.get("/channels/{channel}/spotify", response_model=SpotifyTokensOut, dependencies=[Depends(require_token)])
def get_spotify_tokens(channel: str, db: Session = Depends(get_db)):
    cred = get_channel(channel, db).spotify
    if cred is None:
        raise HTTPException(status_code=404, detail="spotify not configured")
    return SpotifyTokensOut(access_token=cred.access_token, refresh_token=cred.refresh_token, expires_at=cred.expires_at)


@app.put("/channels/{channel}/spotify/token", response_model=SpotifyTokensOut, dependencies=[Depends(require_token)])
def update_spotify_token(channel: str, payload: SpotifyTokenUpdate, db: Session = Depends(get_db)):
    cred = get_channel(channel, db).spotify
    if cred is None:
        raise HTTPException(status_code=404, detail="spotify not configured")
    cred.access_token = payload.access_token
    cred.expires_at = payload.expires_at
    if payload.refresh_token:
        cred.refresh_token = payload.refresh_token
    db.commit()
    return SpotifyTokensOut(access_token=cred.access_token, refresh_token=cred.refresh_token, expires_at=cred.expires_at)


@app.get("/spotify/refresh_tokens", response_model=List[SpotifyRefreshOut], dependencies=[Depends(require_token)])
def list_spotify_refresh_tokens(db: Session = Depends(get_db)):
    rows = db.query(SpotifyCredential, Channel).join(Channel, SpotifyCredential.channel_id == Channel.id).all()
    return [SpotifyRefreshOut(channel=ch.channel_name, refresh_token=cred.refresh_token) for cred, ch in rows]


# =====================================
# Routes: OAuth
# =====================================
@app.get("/auth")
def bot_oauth_start(request: FastAPIRequest):
    client_id = get_setting("twitch_client_id")
    if not client_id or not get_setting("twitch_client_secret"):
        raise HTTPException(status_code=500, detail="Twitch OAuth not configured")
    state = _new_oauth_state("twitch")
    params = {
        "client_id": client_id,
        "redirect_uri": _redirect_uri(request, "bot_redirect_uri", "bot_oauth_callback"),
        "response_type": "code",
        "scope": " ".join(settings_store.get_list("bot_app_scopes")),
        "state": state,
        "force_verify": "true",
    }
    return RedirectResponse(f"https://id.twitch.tv/oauth2/authorize?{urlencode(params)}")


@app.get("/auth/callback")
def bot_oauth_callback(code: str, state: str, request: FastAPIRequest, db: Session = Depends(get_db)):
    client_id = get_setting("twitch_client_id")
    client_secret = get_setting("twitch_client_secret")
    try:
        if not client_id or not client_secret:
            raise HTTPException(status_code=500, detail="Twitch OAuth not configured")
        _pop_oauth_state(state, "twitch")
    except HTTPException as exc:
        return _html_page("Authorization failed", f"<p>{html.escape(str(exc.detail))}</p>", exc.status_code)
    try:
        token_response = requests.post(
            "https://id.twitch.tv/oauth2/token",
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": _redirect_uri(request, "bot_redirect_uri", "bot_oauth_callback"),
            },
            timeout=10,
        )
        token_response.raise_for_status()
        token_payload = token_response.json()
        access_token = token_payload["access_token"]
        user_response = requests.get(
            "https://api.twitch.tv/helix/users",
            headers={"Authorization": f"Bearer {access_token}", "Client-Id": client_id},
            timeout=10,
        )
        user_response.raise_for_status()
        user_info = user_response.json()["data"][0]
    except (requests.RequestException, ValueError, KeyError, IndexError) as exc:
        logger.exception("failed to complete bot oauth: %s", exc)
        return _html_page("Authorization failed", "<p>Could not complete authorization with Twitch.</p>", 502)

    scopes = token_payload.get("scope") or []
    if isinstance(scopes, str):
        scopes = scopes.split()
    expires_in = token_payload.get("expires_in")
    cfg = _get_bot_config(db)
    cfg.login = user_info.get("login")
    cfg.display_name = user_info.get("display_name") or cfg.login
    cfg.access_token = access_token
    cfg.refresh_token = token_payload.get("refresh_token")
    cfg.scopes = " ".join(_normalize_scope_list(scopes)) or None
    cfg.expires_at = utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None
    cfg.enabled = True
    cfg.updated_at = utcnow()
    db.commit()
    set_settings(db, {"bot_user_id": str(user_info.get("id") or "")})
    _broadcast_bot_log(
        {
            "type": "oauth_complete",
            "level": "info",
            "message": f"Bot access token acquired for {cfg.login}",
            "timestamp": utcnow(),
        }
    )
    return _html_page("Authorized", f"<p>Hello {html.escape(cfg.display_name or '')}, the bot is now authorized.</p>")


@app.get("/spotify/auth/{channel}")
def spotify_oauth_start(channel: str, request: FastAPIRequest, db: Session = Depends(get_db)):
    ch = get_channel(channel, db)
    client_id = get_setting("spotify_client_id")
    if not client_id or not get_setting("spotify_client_secret"):
        raise HTTPException(status_code=500, detail="Spotify OAuth not configured")
    state = _new_oauth_state("spotify", channel=ch.channel_name)
    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": _redirect_uri(request, "spotify_redirect_uri", "spotify_oauth_callback"),
        "scope": SPOTIFY_SCOPES,
        "state": state,
    }
    return RedirectResponse(f"https://accounts.spotify.com/authorize?{urlencode(params)}")


@app.get("/spotify/callback")
def spotify_oauth_callback(code: str, state: str, request: FastAPIRequest, db: Session = Depends(get_db)):
    try:
        pending = _pop_oauth_state(state, "spotify")
        ch = get_channel(pending["channel"], db)
    except HTTPException as exc:
        return _html_page("Authorization failed", f"<p>{html.escape(str(exc.detail))}</p>", exc.status_code)
    try:
        response = requests.post(
            "https://accounts.spotify.com/api/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": _redirect_uri(request, "spotify_redirect_uri", "spotify_oauth_callback"),
            },
            auth=(get_setting("spotify_client_id") or "", get_setting("spotify_client_secret") or ""),
            timeout=10,
        )
        response.raise_for_status()
        payload = response.json()
        refresh_token = payload["refresh_token"]
    except (requests.RequestException, ValueError, KeyError) as exc:
        logger.exception("failed to complete spotify oauth for %s: %s", ch.channel_name, exc)
        return _html_page("Authorization failed", "<p>Could not complete authorization with Spotify.</p>", 502)

    cred = ch.spotify or SpotifyCredential(channel_id=ch.id)
    cred.access_token = payload.get("access_token")
    cred.refresh_token = refresh_token
    expires_in = payload.get("expires_in")
    cred.expires_at = utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None
    db.add(cred)
    db.commit()
    logger.info("stored spotify credentials for %s", ch.channel_name)
    return _html_page("Spotify connected", f"<p>Spotify is now connected for {html.escape(ch.channel_name)}.</p>")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "7070")))
