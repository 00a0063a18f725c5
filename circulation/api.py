import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from circulation.book import Book, BookStatus
from circulation.config import configure_logging, settings
from circulation.database import initialize_database, ping
from circulation.desk import CirculationDesk
from circulation.errors import (
    AuthorizationError,
    BookNotFound,
    CirculationError,
    InvalidActionError,
    PersistenceError,
    ResourceNotFoundError,
    ValidationError,
    error_payload,
)
from circulation.inventory import Inventory
from circulation.lifecycle import TransactionLifecycle
from circulation.policy import BorrowingPolicy
from circulation.services.activity import SYSTEM, ActionType, ActivityLog, Entity
from circulation.services.cache_manager import StatisticsCache
from circulation.services.notifications import NotificationService, NotificationStore
from circulation.statistics import DEFAULT_PERIOD, StatisticsAggregator
from circulation.time_utils import Clock, to_iso, utcnow
from circulation.transaction import TransactionStatus
from circulation.users import Role, User, UserDirectory, UserStatus

logger = logging.getLogger(__name__)


# --- Models ---
class BorrowRequest(BaseModel):
    bookId: Optional[int] = None
    userId: Optional[int] = None
    dueDate: Optional[str] = None


class TransactionActionRequest(BaseModel):
    action: Optional[str] = None
    returnDate: Optional[str] = None
    renewDays: Optional[int] = None
    finePaid: bool = True


class BookCreateModel(BaseModel):
    title: str
    author: str
    isbn: str
    category: str
    location: Optional[str] = None
    totalCopies: int = Field(default=1, ge=1)
    status: Optional[BookStatus] = None


class BookUpdateModel(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None
    location: Optional[str] = None
    totalCopies: Optional[int] = None
    status: Optional[BookStatus] = None


class UserCreateModel(BaseModel):
    name: str
    email: str
    role: Role = Role.STUDENT


class UserStatusModel(BaseModel):
    status: UserStatus


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Dependency guarding catalog mutations."""
    if api_key and api_key == settings.api_key:
        return api_key
    raise AuthorizationError("Could not validate credentials")


def create_app(db_file: Optional[str] = None, clock: Clock = utcnow,
               cache: Optional[StatisticsCache] = None,
               notifier: Optional[NotificationService] = None,
               policy: Optional[BorrowingPolicy] = None) -> FastAPI:
    """Build the API around one database file and one statistics cache."""
    db_file = db_file or settings.database_file
    cache = cache if cache is not None else StatisticsCache(redis_url=settings.redis_url)

    inventory = Inventory(db_file)
    users = UserDirectory(db_file)
    lifecycle = TransactionLifecycle(db_file, clock=clock)
    policy = policy or BorrowingPolicy()
    aggregator = StatisticsAggregator(db_file, cache=cache, clock=clock)
    store = NotificationStore(db_file)
    notifier = notifier or NotificationService(store, clock=clock)
    activity = ActivityLog(db_file, clock=clock)
    desk = CirculationDesk(lifecycle, users, policy, notifier, activity)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        initialize_database(db_file)
        cache.start()
        logger.info("%s %s started (database: %s)", settings.app_name, settings.app_version, db_file)
        try:
            yield
        finally:
            await cache.stop()
            notifier.close()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.desk = desk
    app.state.cache = cache
    app.state.notifier = notifier

    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Error handling ---
    @app.exception_handler(CirculationError)
    async def circulation_error_handler(request: Request, exc: CirculationError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=error_payload(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ())[1:]) or None
        error = ValidationError(first.get("msg", "Invalid request"), field=field)
        return JSONResponse(status_code=error.status_code, content=error_payload(error))

    @app.exception_handler(sqlite3.Error)
    async def database_error_handler(request: Request, exc: sqlite3.Error):
        logger.exception("Database error on %s %s", request.method, request.url.path, exc_info=exc)
        error = PersistenceError(str(exc))
        return JSONResponse(status_code=error.status_code, content=error_payload(error))

    # --- Health ---
    @app.get("/health")
    def health():
        db_ok = True
        try:
            ping(db_file)
        except sqlite3.Error:
            db_ok = False
        return {
            "status": "healthy" if db_ok else "degraded",
            "timestamp": to_iso(clock()),
            "version": settings.app_version,
            "database": db_ok,
            "cache": cache.get_stats(),
        }

    # --- Transactions ---
    @app.post("/transactions", status_code=201)
    def borrow_book(payload: BorrowRequest, background_tasks: BackgroundTasks):
        if payload.bookId is None or payload.userId is None:
            raise ValidationError("Book ID and User ID are required")
        tx = desk.borrow(payload.bookId, payload.userId, payload.dueDate, defer=background_tasks.add_task)
        return {"success": True, "transaction": tx.to_dict()}

    @app.get("/transactions")
    def list_transactions(userId: Optional[int] = Query(None), status: Optional[str] = Query(None)):
        if userId is None:
            raise ValidationError("User ID is required", field="userId")
        wanted = None
        if status:
            try:
                wanted = TransactionStatus(status)
            except ValueError as e:
                allowed = ", ".join(s.value for s in TransactionStatus)
                raise ValidationError(f"Invalid status. Allowed: {allowed}", field="status") from e
        transactions = lifecycle.list_transactions(userId, wanted)
        return {"success": True, "transactions": [tx.to_dict() for tx in transactions]}

    @app.post("/transactions/reconcile")
    def reconcile_overdue(background_tasks: BackgroundTasks):
        flipped = desk.reconcile(defer=background_tasks.add_task)
        return {"success": True, "updated": len(flipped), "transactions": [tx.to_dict() for tx in flipped]}

    @app.get("/transactions/{transaction_id}")
    def get_transaction(transaction_id: int):
        tx = lifecycle.get_transaction(transaction_id)
        return {"success": True, "transaction": tx.to_dict()}

    @app.patch("/transactions/{transaction_id}")
    def update_transaction(transaction_id: int, payload: TransactionActionRequest,
                           background_tasks: BackgroundTasks):
        if not payload.action:
            raise ValidationError("Action is required", field="action")

        if payload.action == "return":
            tx = desk.return_book(transaction_id, payload.returnDate, defer=background_tasks.add_task)
            message = "Book returned successfully"
            if tx.fine_amount > 0:
                message += f". Late fee: ${tx.fine_amount:.2f}"
        elif payload.action == "renew":
            tx = desk.renew(transaction_id, payload.renewDays)
            message = "Loan renewed successfully"
        elif payload.action == "payFine":
            tx = desk.pay_fine(transaction_id, payload.finePaid)
            message = "Fine marked as paid" if payload.finePaid else "Fine marked as unpaid"
        else:
            raise InvalidActionError(payload.action, "expected one of return, renew, payFine")

        return {"success": True, "message": message, "transaction": tx.to_dict()}

    # --- Statistics ---
    @app.get("/statistics")
    async def get_statistics(period: str = Query(str(DEFAULT_PERIOD))):
        report = await aggregator.get_statistics(period)
        return report.to_dict()

    # --- Books ---
    @app.get("/books")
    def list_books(category: Optional[str] = Query(None), q: Optional[str] = Query(None)):
        books = inventory.search_books(q) if q else inventory.list_books(category)
        return {"success": True, "books": [b.to_dict() for b in books]}

    @app.post("/books", status_code=201, dependencies=[Depends(get_api_key)])
    def add_book(payload: BookCreateModel):
        book = Book(
            title=payload.title, author=payload.author, isbn=payload.isbn, category=payload.category,
            location=payload.location, total_copies=payload.totalCopies,
            status=payload.status or BookStatus.AVAILABLE,
        )
        inventory.add_book(book)
        activity.record(ActionType.BOOK_ADDED, SYSTEM, Entity("book", book.title, book.id),
                        f'Added "{book.title}" with {book.total_copies} copies')
        return {"success": True, "book": book.to_dict()}

    @app.get("/books/{book_id}")
    def get_book(book_id: int):
        book = inventory.find_book(book_id)
        if book is None:
            raise BookNotFound(book_id)
        return {"success": True, "book": book.to_dict()}

    @app.put("/books/{book_id}", dependencies=[Depends(get_api_key)])
    def update_book(book_id: int, payload: BookUpdateModel):
        book = inventory.update_book(
            book_id, title=payload.title, author=payload.author, category=payload.category,
            location=payload.location, total_copies=payload.totalCopies, status=payload.status,
        )
        if book is None:
            raise BookNotFound(book_id)
        activity.record(ActionType.BOOK_UPDATED, SYSTEM, Entity("book", book.title, book.id),
                        f'Updated "{book.title}"')
        return {"success": True, "book": book.to_dict()}

    @app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
    def delete_book(book_id: int):
        book = inventory.find_book(book_id)
        if book is None or not inventory.remove_book(book_id):
            raise BookNotFound(book_id)
        activity.record(ActionType.BOOK_REMOVED, SYSTEM, Entity("book", book.title, book_id),
                        f'Removed "{book.title}" from the catalog')
        return {"success": True, "message": "Book removed"}

    # --- Users ---
    @app.get("/users")
    def list_users(role: Optional[Role] = Query(None)):
        return {"success": True, "users": [u.to_dict() for u in users.list_users(role)]}

    @app.post("/users", status_code=201)
    def add_user(payload: UserCreateModel):
        user = users.add_user(User(name=payload.name, email=payload.email, role=payload.role))
        activity.record(ActionType.USER_ADDED, SYSTEM, Entity("user", user.name, user.id),
                        f"Registered {user.role.value} {user.name}")
        return {"success": True, "user": user.to_dict()}

    @app.get("/users/{user_id}")
    def get_user(user_id: int):
        user = users.get_user(user_id)
        if user is None:
            raise ResourceNotFoundError("User", user_id)
        return {"success": True, "user": user.to_dict()}

    @app.patch("/users/{user_id}")
    def update_user_status(user_id: int, payload: UserStatusModel):
        user = users.set_status(user_id, payload.status)
        if user is None:
            raise ResourceNotFoundError("User", user_id)
        activity.record(ActionType.USER_UPDATED, SYSTEM, Entity("user", user.name, user.id),
                        f"Set {user.name} to {user.status.value}")
        return {"success": True, "user": user.to_dict()}

    # --- Notifications ---
    @app.get("/notifications")
    def list_notifications(userId: Optional[int] = Query(None), unreadOnly: bool = Query(False),
                           limit: int = Query(50, ge=1, le=200)):
        if userId is None:
            raise ValidationError("User ID is required", field="userId")
        records = store.list_for_user(userId, unread_only=unreadOnly, limit=limit)
        return {
            "success": True,
            "notifications": [r.to_dict() for r in records],
            "unreadCount": store.unread_count(userId),
        }

    @app.patch("/notifications/read-all")
    def mark_all_notifications_read(userId: Optional[int] = Query(None)):
        if userId is None:
            raise ValidationError("User ID is required", field="userId")
        return {"success": True, "updated": store.mark_all_read(userId)}

    @app.patch("/notifications/{notification_id}/read")
    def mark_notification_read(notification_id: int):
        record = store.mark_read(notification_id)
        if record is None:
            raise ResourceNotFoundError("Notification", notification_id)
        return {"success": True, "notification": record.to_dict()}

    # --- Activities ---
    @app.get("/activities")
    def list_activities(limit: int = Query(50, ge=1, le=500),
                        actionType: Optional[List[ActionType]] = Query(None)):
        entries = activity.recent(limit, actionType)
        return {"success": True, "activities": [a.to_dict() for a in entries]}

    return app


configure_logging()
app = create_app()
