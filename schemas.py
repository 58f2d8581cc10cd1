from datetime import datetime
from typing import List, Literal, Optional

from pydantic import AliasGenerator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models import BorrowStatus, ReservationStatus


class RequestModel(BaseModel):
    """Request bodies: camelCase keys from the frontend, snake_case also accepted."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ResponseModel(BaseModel):
    """Response bodies: read from ORM rows, written out with camelCase keys."""
    model_config = ConfigDict(
        alias_generator=AliasGenerator(serialization_alias=to_camel),
        from_attributes=True,
    )


# --- Books ---
class BookCreate(RequestModel):
    title: str = Field(..., min_length=1, max_length=200)
    author: str = Field(..., min_length=1, max_length=200)
    isbn: str = Field(..., min_length=1, max_length=50)
    category: str = Field(..., min_length=1, max_length=100)
    publisher: Optional[str] = Field(None, max_length=200)
    published_year: Optional[int] = Field(None, gt=0)
    description: Optional[str] = None
    location: Optional[str] = Field(None, max_length=100)
    total_copies: int = Field(1, ge=1)


class BookUpdate(RequestModel):
    # all fields optional for updates
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    author: Optional[str] = Field(None, min_length=1, max_length=200)
    isbn: Optional[str] = Field(None, min_length=1, max_length=50)
    category: Optional[str] = Field(None, min_length=1, max_length=100)
    publisher: Optional[str] = Field(None, max_length=200)
    published_year: Optional[int] = Field(None, gt=0)
    description: Optional[str] = None
    location: Optional[str] = Field(None, max_length=100)
    total_copies: Optional[int] = Field(None, ge=0)


class BookOut(ResponseModel):
    id: int
    title: str
    author: str
    isbn: str
    category: str
    publisher: Optional[str] = None
    published_year: Optional[int] = None
    description: Optional[str] = None
    location: Optional[str] = None
    total_copies: int
    available_copies: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class BookSummary(ResponseModel):
    id: int
    title: str
    author: str
    isbn: str


class BookList(ResponseModel):
    books: List[BookOut]


class BookEnvelope(ResponseModel):
    message: Optional[str] = None
    book: BookOut


# --- People as they appear inside circulation records ---
class UserSummary(ResponseModel):
    id: int
    name: str
    email: str


# --- Borrowing ---
class BorrowRequest(RequestModel):
    book_id: int
    # staff only: borrow on behalf of a patron
    user_id: Optional[int] = None


class BorrowingAction(RequestModel):
    borrowing_id: int


class BorrowingOut(ResponseModel):
    id: int
    user_id: int
    book_id: int
    borrowed_at: datetime
    due_date: datetime
    returned_at: Optional[datetime] = None
    status: BorrowStatus
    renewal_count: int
    book: Optional[BookSummary] = None
    user: Optional[UserSummary] = None


class BorrowingList(ResponseModel):
    borrowings: List[BorrowingOut]


class BorrowResult(ResponseModel):
    message: str
    borrowing: BorrowingOut


# --- Fines ---
class FineOut(ResponseModel):
    id: int
    borrowing_id: int
    user_id: int
    amount: float
    is_paid: bool
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class FineList(ResponseModel):
    fines: List[FineOut]


class FineResult(ResponseModel):
    message: str
    fine: FineOut


class ReturnResult(ResponseModel):
    message: str
    borrowing: BorrowingOut
    fine: Optional[FineOut] = None


class RenewResult(ResponseModel):
    message: str
    borrowing: BorrowingOut
    new_due_date: datetime
    renewals_remaining: int


# --- Reservations ---
class ReservationCreate(RequestModel):
    book_id: int
    notes: Optional[str] = Field(None, max_length=500)


class ReservationAction(RequestModel):
    action: Literal["approve", "reject"]
    notes: Optional[str] = Field(None, max_length=500)


class ReservationOut(ResponseModel):
    id: int
    user_id: int
    book_id: int
    status: ReservationStatus
    reserved_at: datetime
    expires_at: datetime
    notes: Optional[str] = None
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    book: Optional[BookSummary] = None
    user: Optional[UserSummary] = None


class ReservationList(ResponseModel):
    reservations: List[ReservationOut]


class ReservationResult(ResponseModel):
    message: str
    reservation: ReservationOut
    borrowing: Optional[BorrowingOut] = None


# --- Stats ---
class LibraryStats(ResponseModel):
    total_books: int
    total_users: int
    books_issued: int
    overdue_books: int
    total_fines: float


class StatsResponse(ResponseModel):
    stats: LibraryStats
    overdue_books: List[BorrowingOut]


class MessageResponse(ResponseModel):
    message: str
