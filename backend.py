"""
Backend interfaces and the local adapter that implements them.

Kohina delegates persistence, authentication and file storage to a
backend-as-a-service. The view services only see the three abstract
interfaces defined here (AuthProvider, DataStore, ObjectStorage). The
Local* classes implement them on top of SQLModel, passlib and itsdangerous
so the application can run and be tested without the hosted service.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Optional
from urllib.parse import quote

from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from passlib.context import CryptContext
from sqlalchemy import event
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import SQLModel, Session, create_engine, select, func

from errors import AuthError, AlreadyExistsError, DataError, StorageError
from models import Account, AuthSession, Follower, Genre, Profile, Track
import settings

logger = logging.getLogger(__name__)

# Session change events
SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
TOKEN_REFRESHED = "TOKEN_REFRESHED"

SessionListener = Callable[[str, Optional[AuthSession]], None]

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    """Hash a plain text password using bcrypt."""
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain text password against a bcrypt hash."""
    return pwd_context.verify(plain_password, hashed_password)


# --- Interfaces ---

class AuthProvider(ABC):
    """Client-scoped view of the auth service; holds the current token."""

    @abstractmethod
    async def get_session(self) -> Optional[AuthSession]:
        """Return the current session, or None when signed out or expired."""

    @abstractmethod
    def on_session_change(self, callback: SessionListener) -> Callable[[], None]:
        """
        Register a listener for sign-in, sign-out and token refresh.

        Returns:
            Callable: Unsubscribe function releasing the listener
        """

    @abstractmethod
    async def sign_up(self, email: str, password: str) -> AuthSession:
        pass

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        pass

    @abstractmethod
    async def refresh_session(self) -> AuthSession:
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        pass


class DataStore(ABC):
    """
    Table-scoped queries against the relational store.

    Filters are {column: value} equality matches; a list, tuple or set value
    matches any of its members. Rows are returned as plain dicts.
    """

    @abstractmethod
    async def select(
        self,
        table: str,
        columns: Optional[Iterable[str]] = None,
        filters: Optional[dict] = None,
        order: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        embed: Optional[Iterable[str]] = None,
    ) -> list[dict]:
        pass

    @abstractmethod
    async def count(self, table: str, filters: Optional[dict] = None) -> int:
        """Count rows matching the filters without fetching them."""

    @abstractmethod
    async def insert(self, table: str, row: dict) -> dict:
        """Insert a row. Raises AlreadyExistsError on a uniqueness conflict."""

    @abstractmethod
    async def upsert(self, table: str, row: dict, on_conflict: str | tuple = "id") -> dict:
        pass

    @abstractmethod
    async def delete(self, table: str, filters: dict) -> int:
        """Delete matching rows and return how many were removed."""


class ObjectStorage(ABC):
    """Binary object storage organised in buckets."""

    @abstractmethod
    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: Optional[str] = None,
        overwrite: bool = False,
    ) -> str:
        pass

    @abstractmethod
    async def remove(self, bucket: str, paths: list[str]) -> list[str]:
        pass

    @abstractmethod
    async def create_signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str:
        """Return a time-limited read URL. Raises StorageError if the object is missing."""

    @abstractmethod
    def get_public_url(self, bucket: str, path: str) -> str:
        pass


# --- Local adapter ---

class LocalAuthProvider(AuthProvider):
    """
    Auth provider backed by the accounts table.

    Access tokens are itsdangerous-signed user ids, valid for max_age seconds.
    """

    def __init__(
        self,
        engine,
        serializer: URLSafeTimedSerializer,
        token: Optional[str] = None,
        max_age: int = settings.SESSION_MAX_AGE,
    ):
        self.engine = engine
        self.serializer = serializer
        self.token = token
        self.max_age = max_age
        self._listeners: list[SessionListener] = []

    def on_session_change(self, callback: SessionListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _notify(self, event: str, session: Optional[AuthSession]) -> None:
        for callback in list(self._listeners):
            callback(event, session)

    def _issue(self, account: Account) -> AuthSession:
        self.token = self.serializer.dumps({"uid": account.id}, salt="session")
        return AuthSession(user_id=account.id, email=account.email, access_token=self.token)

    async def get_session(self) -> Optional[AuthSession]:
        if not self.token:
            return None
        try:
            payload = self.serializer.loads(self.token, salt="session", max_age=self.max_age)
        except (BadSignature, SignatureExpired):
            return None

        with Session(self.engine) as session:
            account = session.get(Account, payload.get("uid"))
        if not account:
            return None
        return AuthSession(user_id=account.id, email=account.email, access_token=self.token)

    async def sign_up(self, email: str, password: str) -> AuthSession:
        email = email.strip().lower()
        if "@" not in email:
            raise AuthError("Invalid email address", code="auth/invalid-email")
        if not password:
            raise AuthError("Password is required")

        with Session(self.engine) as session:
            existing = session.exec(select(Account).where(Account.email == email)).first()
            if existing:
                raise AuthError("Email already registered", code="auth/email-already-in-use")

            account = Account(email=email, password_hash=hash_password(password))
            session.add(account)
            session.commit()
            session.refresh(account)

        logger.info(f"Account created: {account.id}")
        auth_session = self._issue(account)
        self._notify(SIGNED_IN, auth_session)
        return auth_session

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        email = email.strip().lower()
        with Session(self.engine) as session:
            account = session.exec(select(Account).where(Account.email == email)).first()

        if not account:
            raise AuthError("Invalid email or password", code="auth/user-not-found")
        if not verify_password(password, account.password_hash):
            raise AuthError("Invalid email or password", code="auth/wrong-password")

        auth_session = self._issue(account)
        self._notify(SIGNED_IN, auth_session)
        return auth_session

    async def refresh_session(self) -> AuthSession:
        current = await self.get_session()
        if current is None:
            raise AuthError("No active session")

        with Session(self.engine) as session:
            account = session.get(Account, current.user_id)
        auth_session = self._issue(account)
        self._notify(TOKEN_REFRESHED, auth_session)
        return auth_session

    async def sign_out(self) -> None:
        self.token = None
        self._notify(SIGNED_OUT, None)


# Tables exposed through the data store
TABLES: dict[str, type[SQLModel]] = {
    "profiles": Profile,
    "tracks": Track,
    "genres": Genre,
    "followers": Follower,
}

# (table, embedded table) -> (foreign key column, embedded columns)
EMBEDS = {
    ("tracks", "profiles"): ("user_id", ("username", "avatar_url")),
    ("tracks", "genres"): ("genre_id", ("name", "description")),
}


def _is_unique_violation(error: IntegrityError) -> bool:
    orig = getattr(error, "orig", None)
    if getattr(orig, "pgcode", None) == "23505":
        return True
    message = str(orig or error).lower()
    return "unique" in message or "duplicate" in message


class SQLDataStore(DataStore):
    """Data store over a SQLAlchemy engine using the SQLModel tables."""

    def __init__(self, engine):
        self.engine = engine

    def _model(self, table: str) -> type[SQLModel]:
        try:
            return TABLES[table]
        except KeyError:
            raise DataError(f"Unknown table: {table}") from None

    def _column(self, model: type[SQLModel], name: str):
        if name not in model.model_fields:
            raise DataError(f"Unknown column: {model.__tablename__}.{name}")
        return getattr(model, name)

    def _where(self, model, query, filters: Optional[dict]):
        for name, value in (filters or {}).items():
            column = self._column(model, name)
            if isinstance(value, (list, tuple, set, frozenset)):
                query = query.where(column.in_(list(value)))
            else:
                query = query.where(column == value)
        return query

    def _check_row(self, model, row: dict) -> None:
        for name in row:
            self._column(model, name)

    def _embed(self, session: Session, table: str, name: str, rows: list[dict]) -> None:
        try:
            foreign_key, fields = EMBEDS[(table, name)]
        except KeyError:
            raise DataError(f"No relationship between {table} and {name}") from None

        related_model = TABLES[name]
        ids = {row[foreign_key] for row in rows if row.get(foreign_key) is not None}
        related = {}
        if ids:
            query = select(related_model).where(related_model.id.in_(list(ids)))
            related = {item.id: item for item in session.exec(query).all()}

        for row in rows:
            item = related.get(row.get(foreign_key))
            row[name] = {field: getattr(item, field) for field in fields} if item else None

    async def select(
        self,
        table: str,
        columns: Optional[Iterable[str]] = None,
        filters: Optional[dict] = None,
        order: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        embed: Optional[Iterable[str]] = None,
    ) -> list[dict]:
        model = self._model(table)
        columns = list(columns) if columns else None
        embed = list(embed or [])
        for name in columns or []:
            self._column(model, name)

        query = self._where(model, select(model), filters)
        if order:
            column = self._column(model, order)
            query = query.order_by(column.desc() if descending else column.asc())
            # Stable order for rows sharing the same sort value
            for key in model.__table__.primary_key.columns:
                query = query.order_by(key.desc() if descending else key.asc())
        if limit is not None:
            query = query.limit(limit)

        try:
            with Session(self.engine) as session:
                rows = [item.model_dump() for item in session.exec(query).all()]
                for name in embed:
                    self._embed(session, table, name, rows)
        except SQLAlchemyError as e:
            logger.error(f"Select on {table} failed: {e}")
            raise DataError(f"Failed to load {table}") from e

        if columns:
            keep = set(columns) | set(embed)
            rows = [{key: value for key, value in row.items() if key in keep} for row in rows]
        return rows

    async def count(self, table: str, filters: Optional[dict] = None) -> int:
        model = self._model(table)
        query = self._where(model, select(func.count()).select_from(model), filters)
        try:
            with Session(self.engine) as session:
                return session.exec(query).one()
        except SQLAlchemyError as e:
            logger.error(f"Count on {table} failed: {e}")
            raise DataError(f"Failed to count {table}") from e

    async def insert(self, table: str, row: dict) -> dict:
        model = self._model(table)
        self._check_row(model, row)
        try:
            with Session(self.engine) as session:
                item = model(**row)
                session.add(item)
                try:
                    session.commit()
                except IntegrityError as e:
                    session.rollback()
                    if _is_unique_violation(e):
                        raise AlreadyExistsError(f"Duplicate row in {table}", code="data/conflict") from e
                    raise
                session.refresh(item)
                return item.model_dump()
        except SQLAlchemyError as e:
            logger.error(f"Insert into {table} failed: {e}")
            raise DataError(f"Failed to save {table} record") from e

    async def upsert(self, table: str, row: dict, on_conflict: str | tuple = "id") -> dict:
        model = self._model(table)
        self._check_row(model, row)
        keys = (on_conflict,) if isinstance(on_conflict, str) else tuple(on_conflict)
        missing = [key for key in keys if key not in row]
        if missing:
            raise DataError(f"Upsert on {table} needs values for {', '.join(missing)}")

        try:
            with Session(self.engine) as session:
                query = self._where(model, select(model), {key: row[key] for key in keys})
                item = session.exec(query).first()
                if item:
                    for name, value in row.items():
                        setattr(item, name, value)
                else:
                    item = model(**row)
                session.add(item)
                session.commit()
                session.refresh(item)
                return item.model_dump()
        except SQLAlchemyError as e:
            logger.error(f"Upsert into {table} failed: {e}")
            raise DataError(f"Failed to save {table} record") from e

    async def delete(self, table: str, filters: dict) -> int:
        model = self._model(table)
        if not filters:
            raise DataError(f"Refusing to delete from {table} without filters")

        try:
            with Session(self.engine) as session:
                items = session.exec(self._where(model, select(model), filters)).all()
                for item in items:
                    session.delete(item)
                session.commit()
                return len(items)
        except SQLAlchemyError as e:
            logger.error(f"Delete from {table} failed: {e}")
            raise DataError(f"Failed to delete {table} record") from e


class LocalObjectStorage(ObjectStorage):
    """
    Object storage in a local directory, one sub-directory per bucket.

    Private objects are read through signed URLs carrying an itsdangerous
    token; objects in public buckets are served without one.
    """

    def __init__(
        self,
        root: Path,
        serializer: URLSafeTimedSerializer,
        public_buckets: Iterable[str] = settings.PUBLIC_BUCKETS,
    ):
        self.root = Path(root)
        self.serializer = serializer
        self.public_buckets = set(public_buckets)

    def _resolve(self, bucket: str, path: str) -> Path:
        base = (self.root / bucket).resolve()
        target = (base / path).resolve()
        if not path or base not in target.parents:
            raise StorageError("Invalid object path", code="storage/unauthorized")
        return target

    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: Optional[str] = None,
        overwrite: bool = False,
    ) -> str:
        target = self._resolve(bucket, path)
        if target.exists() and not overwrite:
            raise StorageError("The resource already exists", code="storage/already-exists")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            logger.error(f"Writing {bucket}/{path} failed: {e}")
            raise StorageError(f"Upload failed: {e}") from e

        logger.info(f"Stored {bucket}/{path} ({len(data)} bytes, {content_type})")
        return path

    async def remove(self, bucket: str, paths: list[str]) -> list[str]:
        removed = []
        for path in paths:
            target = self._resolve(bucket, path)
            if not target.exists():
                continue
            try:
                target.unlink()
            except OSError as e:
                raise StorageError(f"Could not remove {path}: {e}") from e
            removed.append(path)
        return removed

    async def create_signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str:
        target = self._resolve(bucket, path)
        if not target.is_file():
            raise StorageError("Object not found", code="storage/not-found")

        token = self.serializer.dumps({"b": bucket, "p": path, "ttl": ttl_seconds}, salt="storage")
        return f"/storage/sign/{bucket}/{quote(path)}?token={token}"

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"/storage/public/{bucket}/{quote(path)}"

    def open_signed(self, bucket: str, path: str, token: str) -> Path:
        """
        Check a signed URL token and return the file it grants access to.

        Raises:
            StorageError: Token is invalid, expired, issued for another
            object, or the object no longer exists
        """
        try:
            payload, signed_at = self.serializer.loads(token, salt="storage", return_timestamp=True)
        except BadSignature as e:
            raise StorageError("Invalid signature", code="storage/unauthorized") from e

        if payload.get("b") != bucket or payload.get("p") != path:
            raise StorageError("Invalid signature", code="storage/unauthorized")
        age = (datetime.now(timezone.utc) - signed_at).total_seconds()
        if age > payload.get("ttl", 0):
            raise StorageError("Signed URL expired", code="storage/unauthorized")

        target = self._resolve(bucket, path)
        if not target.is_file():
            raise StorageError("Object not found", code="storage/not-found")
        return target

    def open_public(self, bucket: str, path: str) -> Path:
        if bucket not in self.public_buckets:
            raise StorageError("Bucket is not public", code="storage/unauthorized")
        target = self._resolve(bucket, path)
        if not target.is_file():
            raise StorageError("Object not found", code="storage/not-found")
        return target


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite leaves foreign keys unchecked unless enabled on every connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Backend:
    """Local stand-in for the hosted backend: data store, storage and auth."""

    def __init__(self, database_url: str, secret_key: str, storage_dir: Path, echo: bool = False):
        is_sqlite = database_url.startswith("sqlite")
        connect_args = {"check_same_thread": False} if is_sqlite else {}
        self.engine = create_engine(database_url, echo=echo, connect_args=connect_args)
        if is_sqlite:
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self.serializer = URLSafeTimedSerializer(secret_key)
        self.db = SQLDataStore(self.engine)
        self.storage = LocalObjectStorage(storage_dir, self.serializer)

    def auth(self, token: Optional[str] = None) -> LocalAuthProvider:
        """Create an auth client bound to the given access token."""
        return LocalAuthProvider(self.engine, self.serializer, token=token)

    def create_all(self) -> None:
        SQLModel.metadata.create_all(self.engine)
