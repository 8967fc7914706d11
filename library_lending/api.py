import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .accounts import Role, User
from .book import Book
from .config import Settings, settings
from .database import Storage, initialize_database, utcnow
from .errors import LendingError
from .lending import LendingEngine
from .loan import FineConfig, Loan, LoanStatus

logger = logging.getLogger(__name__)


# --- Models ---
class CamelModel(BaseModel):
    """Snake-case attributes in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BookModel(CamelModel):
    book_id: str
    title: str
    author: str
    isbn: str | None = None
    category: str = ""
    total_copies: int
    available: int
    created_at: str | None = None
    updated_at: str | None = None


class BookCreateModel(CamelModel):
    title: str
    author: str
    isbn: str | None = None
    category: str = ""
    total_copies: int = Field(default=1, ge=1)


class BookUpdateModel(CamelModel):
    title: str | None = None
    author: str | None = None
    category: str | None = None
    total_copies: int | None = Field(default=None, ge=1)


class UserModel(CamelModel):
    user_id: str
    name: str
    email: str
    role: Role
    active: bool = True


class UserCreateModel(CamelModel):
    name: str
    email: str
    role: Role = Role.MEMBER


class FineModel(CamelModel):
    amount: float
    is_paid: bool
    paid_date: datetime | None = None


class LoanBookModel(CamelModel):
    book_id: str
    title: str
    author: str | None = None
    isbn: str | None = None
    category: str | None = None
    available: int | None = None
    total_copies: int | None = None


class LoanBorrowerModel(CamelModel):
    user_id: str
    name: str
    email: str | None = None


class LoanModel(CamelModel):
    loan_id: str
    book_id: str
    borrower_id: str
    status: LoanStatus
    display_status: str
    issue_date: datetime
    due_date: datetime
    return_date: datetime | None = None
    returned_to: str | None = None
    cancelled_by: str | None = None
    fine: FineModel
    book: LoanBookModel | None = None
    borrower: LoanBorrowerModel | None = None


class IssueRequest(CamelModel):
    book_id: str
    due_date: datetime | None = Field(default=None, description="Defaults to the standard loan period")


class ReturnRequest(CamelModel):
    loan_id: str | None = None
    book_id: str | None = None
    borrower_id: str | None = None


class ReturnResponse(CamelModel):
    message: str = "Book returned successfully"
    transaction: LoanModel
    fine: float


class FineAmountResponse(CamelModel):
    fine_amount: float


class UnpaidFinesResponse(CamelModel):
    total_unpaid_fines: float
    transactions: List[LoanModel]


class FineConfigModel(CamelModel):
    rate_per_day: float = Field(ge=0)
    grace_period_days: int = Field(ge=0)
    max_fine: float = Field(ge=0)
    updated_at: datetime | None = None
    updated_by: str | None = None


class BookStatusResponse(CamelModel):
    transaction: LoanModel | None = None
    can_borrow: bool


class StatsModel(CamelModel):
    total_books: int
    total_copies: int
    available_copies: int


class HealthResponse(CamelModel):
    status: str
    timestamp: str
    db: bool


# --- Converters ---
def _book_model(book: Book) -> BookModel:
    return BookModel(**book.to_dict())


def _user_model(user: User) -> UserModel:
    return UserModel(**user.to_dict())


def _loan_model(loan: Loan, now: datetime) -> LoanModel:
    return LoanModel(
        loan_id=loan.loan_id,
        book_id=loan.book_id,
        borrower_id=loan.borrower_id,
        status=loan.status,
        display_status=loan.display_status(now),
        issue_date=loan.issue_date,
        due_date=loan.due_date,
        return_date=loan.return_date,
        returned_to=loan.returned_to,
        cancelled_by=loan.cancelled_by,
        fine=FineModel(amount=loan.fine.amount, is_paid=loan.fine.is_paid, paid_date=loan.fine.paid_date),
        book=LoanBookModel(**loan.book) if loan.book else None,
        borrower=LoanBorrowerModel(**loan.borrower) if loan.borrower else None,
    )


def _fine_config_model(config: FineConfig) -> FineConfigModel:
    return FineConfigModel(rate_per_day=config.rate_per_day, grace_period_days=config.grace_period_days,
                           max_fine=config.max_fine, updated_at=config.updated_at,
                           updated_by=config.updated_by)


# --- Dependencies ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)


def get_engine(request: Request) -> LendingEngine:
    return request.app.state.engine


def get_api_key(request: Request, api_key: Optional[str] = Security(api_key_header)) -> str:
    """Admin endpoints: the key must match the configured one."""
    expected = request.app.state.settings.api_key
    if api_key and secrets.compare_digest(api_key, expected):
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_current_user(user_id: Optional[str] = Security(user_id_header)) -> str:
    """Caller identity as established by the authentication layer in front of this service."""
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


def get_actor(user_id: Optional[str] = Security(user_id_header)) -> Optional[str]:
    return user_id or None


router = APIRouter()


# --- Health ---
@router.get("/health", response_model=HealthResponse)
def health(request: Request):
    storage: Storage = request.app.state.storage
    return HealthResponse(status="healthy", timestamp=utcnow().isoformat(), db=storage.ping())


# --- Catalog ---
@router.get("/books", response_model=List[BookModel])
def list_books(q: Optional[str] = Query(None, description="Title, author or ISBN"),
               category: Optional[str] = None, engine: LendingEngine = Depends(get_engine)):
    return [_book_model(b) for b in engine.catalog.list_books(query=q, category=category)]


@router.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str, engine: LendingEngine = Depends(get_engine)):
    return _book_model(engine.catalog.require_book(book_id))


@router.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel, engine: LendingEngine = Depends(get_engine)):
    book = engine.catalog.add_book(payload.title, payload.author, isbn=payload.isbn,
                                   category=payload.category, total_copies=payload.total_copies)
    return _book_model(book)


@router.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
def update_book(book_id: str, payload: BookUpdateModel, engine: LendingEngine = Depends(get_engine)):
    book = engine.catalog.update_book(book_id, title=payload.title, author=payload.author,
                                      category=payload.category, total_copies=payload.total_copies)
    return _book_model(book)


@router.get("/stats", response_model=StatsModel)
def get_library_stats(engine: LendingEngine = Depends(get_engine)):
    """Book and copy counts across the catalog."""
    return StatsModel(**engine.catalog.get_statistics())


@router.get("/categories", response_model=List[str])
def list_categories(engine: LendingEngine = Depends(get_engine)):
    return engine.catalog.list_categories()


# --- Accounts ---
@router.post("/users", response_model=UserModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_user(payload: UserCreateModel, engine: LendingEngine = Depends(get_engine)):
    return _user_model(engine.accounts.add_user(payload.name, payload.email, payload.role))


@router.get("/users/{user_id}", response_model=UserModel, dependencies=[Depends(get_api_key)])
def get_user(user_id: str, engine: LendingEngine = Depends(get_engine)):
    return _user_model(engine.accounts.require_user(user_id))


# --- Transactions ---
@router.post("/transactions/issue", response_model=LoanModel, status_code=201)
def issue_book(payload: IssueRequest, user_id: str = Depends(get_current_user),
               engine: LendingEngine = Depends(get_engine)):
    loan = engine.issue_book(user_id, payload.book_id, payload.due_date)
    return _loan_model(loan, engine.now())


@router.post("/transactions/return", response_model=ReturnResponse, dependencies=[Depends(get_api_key)])
def return_book(payload: ReturnRequest, actor: Optional[str] = Depends(get_actor),
                engine: LendingEngine = Depends(get_engine)):
    loan = engine.return_book(payload.loan_id, book_id=payload.book_id,
                              borrower_id=payload.borrower_id, actor_id=actor)
    return ReturnResponse(transaction=_loan_model(loan, engine.now()), fine=loan.fine.amount)


@router.post("/transactions/{loan_id}/cancel", response_model=LoanModel, dependencies=[Depends(get_api_key)])
def cancel_loan(loan_id: str, actor: Optional[str] = Depends(get_actor),
                engine: LendingEngine = Depends(get_engine)):
    return _loan_model(engine.cancel_loan(loan_id, actor), engine.now())


@router.get("/transactions/my", response_model=List[LoanModel])
def my_transactions(status: Optional[LoanStatus] = None, user_id: str = Depends(get_current_user),
                    engine: LendingEngine = Depends(get_engine)):
    now = engine.now()
    return [_loan_model(l, now) for l in engine.list_borrower_loans(user_id, status)]


@router.get("/transactions/book-status/{book_id}", response_model=BookStatusResponse)
def book_status(book_id: str, user_id: str = Depends(get_current_user),
                engine: LendingEngine = Depends(get_engine)):
    result = engine.book_status(user_id, book_id)
    loan = _loan_model(result.loan, engine.now()) if result.loan else None
    return BookStatusResponse(transaction=loan, can_borrow=result.can_borrow)


@router.get("/transactions/active", response_model=List[LoanModel], dependencies=[Depends(get_api_key)])
def active_transactions(engine: LendingEngine = Depends(get_engine)):
    now = engine.now()
    return [_loan_model(l, now) for l in engine.list_active_loans()]


@router.get("/transactions", response_model=List[LoanModel], dependencies=[Depends(get_api_key)])
def all_transactions(status: Optional[LoanStatus] = None,
                     start_date: Optional[datetime] = Query(None, alias="startDate"),
                     end_date: Optional[datetime] = Query(None, alias="endDate"),
                     engine: LendingEngine = Depends(get_engine)):
    now = engine.now()
    return [_loan_model(l, now) for l in engine.list_loans(status, start_date, end_date)]


@router.get("/transactions/{loan_id}", response_model=LoanModel)
def get_transaction(loan_id: str, engine: LendingEngine = Depends(get_engine)):
    loan = engine.ledger.get_loan(loan_id)
    if loan is None:
        raise HTTPException(status_code=404, detail=f"Loan {loan_id} not found.")
    return _loan_model(loan, engine.now())


# --- Fines ---
@router.get("/fines/config", response_model=FineConfigModel)
def get_fine_config(engine: LendingEngine = Depends(get_engine)):
    return _fine_config_model(engine.get_fine_config())


@router.put("/fines/config", response_model=FineConfigModel, dependencies=[Depends(get_api_key)])
def update_fine_config(payload: FineConfigModel, actor: Optional[str] = Depends(get_actor),
                       engine: LendingEngine = Depends(get_engine)):
    config = engine.update_fine_config(payload.rate_per_day, payload.grace_period_days,
                                       payload.max_fine, actor_id=actor)
    return _fine_config_model(config)


@router.get("/fines/calculate/{loan_id}", response_model=FineAmountResponse)
def calculate_fine(loan_id: str, engine: LendingEngine = Depends(get_engine)):
    return FineAmountResponse(fine_amount=engine.calculate_fine(loan_id))


@router.post("/fines/pay/{loan_id}", response_model=LoanModel)
def pay_fine(loan_id: str, user_id: str = Depends(get_current_user),
             engine: LendingEngine = Depends(get_engine)):
    return _loan_model(engine.pay_fine(loan_id, payer_id=user_id), engine.now())


@router.get("/fines/unpaid", response_model=UnpaidFinesResponse)
def unpaid_fines(borrower: Optional[str] = Query(None), user_id: Optional[str] = Depends(get_actor),
                 engine: LendingEngine = Depends(get_engine)):
    target = borrower or user_id
    if not target:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    result = engine.list_unpaid_fines(target)
    now = engine.now()
    return UnpaidFinesResponse(total_unpaid_fines=result.total,
                               transactions=[_loan_model(l, now) for l in result.loans])


# --- Application ---
async def lending_error_handler(request: Request, exc: LendingError) -> JSONResponse:
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def create_app(app_settings: Optional[Settings] = None,
               clock: Optional[Callable[[], datetime]] = None) -> FastAPI:
    """Build the API. The storage handle lives for the lifespan of the app."""
    cfg = app_settings or settings
    logging.basicConfig(level=cfg.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        storage = Storage(settings=cfg)
        initialize_database(storage)
        app.state.storage = storage
        app.state.engine = LendingEngine(storage, settings=cfg, clock=clock)
        logger.info(f"{cfg.app_name} {cfg.app_version} started with database {storage.db_file}")
        try:
            yield
        finally:
            logger.info(f"{cfg.app_name} shutting down")

    app = FastAPI(title=cfg.app_name, version=cfg.app_version, lifespan=lifespan)
    app.state.settings = cfg
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LendingError, lending_error_handler)
    app.include_router(router)
    return app


app = create_app()
