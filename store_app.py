from __future__ import annotations
import os
import logging
import contextlib
from typing import Optional, List, Any, Dict, Iterable, Callable, Awaitable
from datetime import datetime, timedelta

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request as FastAPIRequest
from pydantic import BaseModel
from sqlalchemy import (
    create_engine, Column, Integer, String, Text, DateTime, Boolean,
    ForeignKey, func,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker, Session
from sqlalchemy.pool import StaticPool

# =====================================
# Config
# =====================================
DB_URL = os.getenv("DB_URL", "sqlite:///djbot.sqlite")

# Authentication token for admin endpoints.
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "change-me")

API_VERSION = "0.1.0"

SKIP_COUNTER_ID = 1

logger = logging.getLogger(__name__)

Base = declarative_base()


def _day_ago() -> datetime:
    return datetime.utcnow() - timedelta(days=1)


# =====================================
# Models
# =====================================
class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    username = Column(String, nullable=False, unique=True, index=True)
    last_added_video = Column(DateTime, default=_day_ago, nullable=False)
    last_skip = Column(DateTime, default=_day_ago, nullable=False)
    last_removed_video = Column(DateTime, default=_day_ago, nullable=False)
    last_response = Column(DateTime, default=_day_ago, nullable=False)
    last_track_stop = Column(DateTime, default=_day_ago, nullable=False)
    # True until the user adds a video; the notifier only looks at False rows.
    user_notified = Column(Boolean, default=True, nullable=False)
    is_tracking = Column(Boolean, default=False, nullable=False)
    spotify_access_token = Column(Text, nullable=True)
    spotify_refresh_token = Column(Text, nullable=True)
    spotify_token_expiration = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Song(Base):
    __tablename__ = "songs"
    id = Column(Integer, primary_key=True)
    link = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class UserSong(Base):
    __tablename__ = "user_songs"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    song_id = Column(Integer, ForeignKey("songs.id", ondelete="CASCADE"), nullable=False)
    title = Column(String, nullable=False, default="")
    played = Column(Boolean, default=False, nullable=False)
    added_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    played_at = Column(DateTime, nullable=True)

    user = relationship("User", lazy="joined")
    song = relationship("Song", lazy="joined")

    @property
    def link(self) -> Optional[str]:
        return self.song.link if self.song else None


class SkipCounter(Base):
    __tablename__ = "skip_counter"
    id = Column(Integer, primary_key=True)
    count = Column(Integer, default=0, nullable=False)


class SeedTitle(Base):
    __tablename__ = "seed_titles"
    id = Column(Integer, primary_key=True)
    title = Column(String, nullable=False)


class BotConfig(Base):
    __tablename__ = "bot_config"
    id = Column(Integer, primary_key=True)
    login = Column(String, nullable=True)
    bot_user_id = Column(String, nullable=True)
    channel_id = Column(String, nullable=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    enabled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


def create_session_factory(url: str = DB_URL) -> sessionmaker:
    kwargs: Dict[str, Any] = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


SessionLocal = create_session_factory(DB_URL)


# =====================================
# Record helpers (operate on an open session)
# =====================================
def _find_user(db: Session, username: str) -> Optional[User]:
    return db.query(User).filter(User.username == username).first()


def _find_or_create_song(db: Session, link: str) -> Song:
    song = db.query(Song).filter(Song.link == link).first()
    if song is None:
        song = Song(link=link)
        db.add(song)
        db.flush()
    return song


def _skip_counter(db: Session) -> SkipCounter:
    row = db.get(SkipCounter, SKIP_COUNTER_ID)
    if row is None:
        row = SkipCounter(id=SKIP_COUNTER_ID, count=0)
        db.add(row)
        db.flush()
    return row


def _get_bot_config(db: Session) -> BotConfig:
    cfg = db.query(BotConfig).order_by(BotConfig.id.asc()).first()
    if not cfg:
        cfg = BotConfig(enabled=False)
        db.add(cfg)
        db.flush()
    return cfg


def _serialize_bot_config(cfg: BotConfig, *, include_tokens: bool = False) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "login": cfg.login,
        "bot_user_id": cfg.bot_user_id,
        "channel_id": cfg.channel_id,
        "enabled": bool(cfg.enabled),
        "expires_at": cfg.expires_at,
        "has_tokens": bool(cfg.access_token and cfg.refresh_token),
    }
    if include_tokens:
        data["access_token"] = cfg.access_token
        data["refresh_token"] = cfg.refresh_token
    return data


class RecordStore:
    """Key-addressed access to users, songs and the skip counter.

    Every helper opens its own session and commits before returning, so one
    call never interleaves with another coroutine on the same event loop.
    A caller that reads, awaits the network and then writes may still lose
    an update made in between; nothing here locks across calls.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        *,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory or SessionLocal
        self.clock = clock

    @property
    def engine(self):
        return self._session_factory.kw["bind"]

    def new_session(self) -> Session:
        return self._session_factory()

    @contextlib.contextmanager
    def session(self):
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ---- users ----
    def get_user(self, username: str) -> Optional[User]:
        with self.session() as db:
            return _find_user(db, username)

    def get_or_create_user(self, username: str) -> User:
        with self.session() as db:
            user = _find_user(db, username)
            if user is None:
                day_ago = self.clock() - timedelta(days=1)
                user = User(
                    username=username,
                    last_added_video=day_ago,
                    last_skip=day_ago,
                    last_removed_video=day_ago,
                    last_response=day_ago,
                    last_track_stop=day_ago,
                )
                db.add(user)
                db.flush()
                logger.info("Created user %s", username)
            return user

    def update_user(self, username: str, **fields: Any) -> Optional[User]:
        with self.session() as db:
            user = _find_user(db, username)
            if user is None:
                return None
            for key, value in fields.items():
                if not hasattr(User, key):
                    raise AttributeError(f"User has no field {key!r}")
                setattr(user, key, value)
            return user

    def users_pending_notification(self) -> List[User]:
        with self.session() as db:
            return db.query(User).filter(User.user_notified.is_(False)).order_by(User.id.asc()).all()

    def clear_tracking_flags(self) -> int:
        with self.session() as db:
            users = db.query(User).filter(User.is_tracking.is_(True)).all()
            for user in users:
                user.is_tracking = False
            return len(users)

    # ---- songs ----
    def find_or_create_song(self, link: str) -> Song:
        with self.session() as db:
            return _find_or_create_song(db, link)

    def list_songs(self) -> List[Song]:
        with self.session() as db:
            return db.query(Song).order_by(Song.id.asc()).all()

    def random_song(self) -> Optional[Song]:
        with self.session() as db:
            return db.query(Song).order_by(func.random()).first()

    def add_user_song(self, username: str, link: str, title: str) -> Optional[UserSong]:
        with self.session() as db:
            user = _find_user(db, username)
            if user is None:
                return None
            song = _find_or_create_song(db, link)
            row = UserSong(user=user, song=song, title=title, played=False, added_at=self.clock())
            db.add(row)
            db.flush()
            return row

    def unplayed_user_songs(self, username: Optional[str] = None) -> List[UserSong]:
        with self.session() as db:
            query = db.query(UserSong).filter(UserSong.played.is_(False))
            if username is not None:
                query = query.join(User, UserSong.user_id == User.id).filter(User.username == username)
            return query.order_by(UserSong.added_at.asc(), UserSong.id.asc()).all()

    def mark_played(self, ids: Iterable[int]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        with self.session() as db:
            now = self.clock()
            rows = db.query(UserSong).filter(UserSong.id.in_(ids), UserSong.played.is_(False)).all()
            for row in rows:
                row.played = True
                row.played_at = now
            return len(rows)

    def mark_unplayed(self, row_id: int) -> None:
        with self.session() as db:
            row = db.get(UserSong, row_id)
            if row is not None:
                row.played = False
                row.played_at = None

    def claim_recent_unplayed(self, username: str, since: datetime) -> Optional[UserSong]:
        """Mark the user's newest unplayed row played and return it, if added after ``since``."""
        with self.session() as db:
            row = (
                db.query(UserSong)
                .join(User, UserSong.user_id == User.id)
                .filter(
                    User.username == username,
                    UserSong.played.is_(False),
                )
                .order_by(UserSong.added_at.desc(), UserSong.id.desc())
                .first()
            )
            if row is None or row.added_at < since:
                return None
            row.played = True
            row.played_at = self.clock()
            return row

    # ---- skip counter ----
    def skip_count(self) -> int:
        with self.session() as db:
            return _skip_counter(db).count

    def increment_skip(self) -> int:
        with self.session() as db:
            row = _skip_counter(db)
            row.count += 1
            return row.count

    def decrement_skip(self) -> int:
        with self.session() as db:
            row = _skip_counter(db)
            row.count = max(row.count - 1, 0)
            return row.count

    def reset_skip(self) -> None:
        with self.session() as db:
            _skip_counter(db).count = 0

    # ---- seed titles ----
    def add_seed_title(self, title: str) -> SeedTitle:
        with self.session() as db:
            row = SeedTitle(title=title)
            db.add(row)
            db.flush()
            return row

    def random_seed_title(self) -> Optional[str]:
        with self.session() as db:
            row = db.query(SeedTitle).order_by(func.random()).first()
            return row.title if row else None

    # ---- bot config ----
    def get_bot_config(self) -> Dict[str, Any]:
        with self.session() as db:
            return _serialize_bot_config(_get_bot_config(db), include_tokens=True)

    def update_bot_config(self, **fields: Any) -> Dict[str, Any]:
        with self.session() as db:
            cfg = _get_bot_config(db)
            for key, value in fields.items():
                setattr(cfg, key, value)
            cfg.updated_at = datetime.utcnow()
            return _serialize_bot_config(cfg, include_tokens=True)


# =====================================
# Schemas
# =====================================
class SongIn(BaseModel):
    link: str


class SongOut(BaseModel):
    id: int
    link: str
    created_at: datetime

    class Config:
        from_attributes = True


class SeedTitleIn(BaseModel):
    title: str


class SeedTitleOut(BaseModel):
    id: int
    title: str

    class Config:
        from_attributes = True


class UserOut(BaseModel):
    id: int
    username: str
    last_added_video: datetime
    last_skip: datetime
    last_removed_video: datetime
    last_response: datetime
    last_track_stop: datetime
    user_notified: bool
    is_tracking: bool

    class Config:
        from_attributes = True


class BotConfigOut(BaseModel):
    login: Optional[str] = None
    bot_user_id: Optional[str] = None
    channel_id: Optional[str] = None
    enabled: bool = False
    expires_at: Optional[datetime] = None
    has_tokens: bool = False


class BotConfigUpdate(BaseModel):
    login: Optional[str] = None
    bot_user_id: Optional[str] = None
    channel_id: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    enabled: Optional[bool] = None


# =====================================
# App
# =====================================
app = FastAPI(title="djbot record store", version=API_VERSION)
app.state.store = RecordStore()
# Set by the running bot: async callable that sends a line to chat.
app.state.chat = None


def get_store(request: FastAPIRequest) -> RecordStore:
    return request.app.state.store


def get_db(store: RecordStore = Depends(get_store)) -> Session:
    db = store.new_session()
    try:
        yield db
    finally:
        db.close()


def require_token(x_admin_token: str = Header(None)):
    if x_admin_token != ADMIN_TOKEN:
        raise HTTPException(status_code=401, detail="invalid admin token")


@app.get("/system/health")
def health(store: RecordStore = Depends(get_store)):
    try:
        with store.engine.connect() as _:
            pass
        return {"status": "ok"}
    except Exception as e:
        raise HTTPException(500, detail=str(e))


# =====================================
# Routes: Songs
# =====================================
@app.get("/songs", response_model=List[SongOut], dependencies=[Depends(require_token)])
def list_songs(db: Session = Depends(get_db)):
    return db.query(Song).order_by(Song.id.asc()).all()


@app.post("/songs", response_model=SongOut, dependencies=[Depends(require_token)])
def add_song(payload: SongIn, db: Session = Depends(get_db)):
    link = payload.link.strip()
    if not link:
        raise HTTPException(status_code=422, detail="link must not be empty")
    song = _find_or_create_song(db, link)
    db.commit()
    return song


@app.get("/seed-titles", response_model=List[SeedTitleOut], dependencies=[Depends(require_token)])
def list_seed_titles(db: Session = Depends(get_db)):
    return db.query(SeedTitle).order_by(SeedTitle.id.asc()).all()


@app.post("/seed-titles", response_model=SeedTitleOut, dependencies=[Depends(require_token)])
def add_seed_title(payload: SeedTitleIn, db: Session = Depends(get_db)):
    title = payload.title.strip()
    if not title:
        raise HTTPException(status_code=422, detail="title must not be empty")
    row = SeedTitle(title=title)
    db.add(row)
    db.commit()
    return row


# =====================================
# Routes: Users
# =====================================
@app.get("/users/{username}", response_model=UserOut, dependencies=[Depends(require_token)])
def get_user(username: str, db: Session = Depends(get_db)):
    user = _find_user(db, username)
    if not user:
        raise HTTPException(status_code=404, detail="user not found")
    return user


# =====================================
# Routes: Bot
# =====================================
@app.get("/bot/config", response_model=BotConfigOut, dependencies=[Depends(require_token)])
def get_bot_config(db: Session = Depends(get_db)):
    cfg = _get_bot_config(db)
    db.commit()
    return _serialize_bot_config(cfg)


@app.put("/bot/config", response_model=BotConfigOut, dependencies=[Depends(require_token)])
def update_bot_config(payload: BotConfigUpdate, db: Session = Depends(get_db)):
    cfg = _get_bot_config(db)
    for key, value in payload.model_dump(exclude_unset=True).items():
        setattr(cfg, key, value)
    cfg.updated_at = datetime.utcnow()
    db.commit()
    return _serialize_bot_config(cfg)


@app.post("/send-message", dependencies=[Depends(require_token)])
async def send_message(request: FastAPIRequest, message: str = Query(..., min_length=1)):
    chat: Optional[Callable[[str], Awaitable[None]]] = request.app.state.chat
    if chat is None:
        raise HTTPException(status_code=503, detail="bot is not connected")
    await chat(message)
    return {"sent": message}
