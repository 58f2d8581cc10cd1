import logging
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

import models  # ensure models are imported so tables are registered
import auth_utils
import circulation
import crud
from auth import router as auth_router
from admin import router as admin_router
from config import CORS_ORIGINS, DEFAULT_ADMIN_EMAIL, DEFAULT_ADMIN_PASSWORD, LOG_LEVEL
from database import Base, SessionLocal, engine, get_db
from exceptions import LibraryError
from schemas import (
    BookCreate, BookEnvelope, BookList, BookUpdate, BorrowRequest, BorrowResult, BorrowingAction,
    BorrowingList, FineList, FineResult, MessageResponse, RenewResult, ReservationAction,
    ReservationCreate, ReservationList, ReservationResult, ReturnResult, StatsResponse,
)

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("library")

app = FastAPI(title="Library Management System")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600
)

# Log all requests
@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
    return response


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "Internal server error"})

# Include routers
app.include_router(auth_router)
app.include_router(admin_router)

@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
    # Create a default admin user if not exists
    db = SessionLocal()
    try:
        if not crud.get_user_by_email(DEFAULT_ADMIN_EMAIL, db):
            admin_user = models.User(
                email=DEFAULT_ADMIN_EMAIL,
                hashed_password=auth_utils.get_password_hash(DEFAULT_ADMIN_PASSWORD),
                name="Admin User",
                role=models.UserRole.ADMIN,
            )
            db.add(admin_user)
            db.commit()
            logger.info("Created default admin user %s", DEFAULT_ADMIN_EMAIL)
    finally:
        db.close()


@app.get("/health")
def health(db: Session = Depends(get_db)):
    """Basic health check endpoint. Returns DB connectivity and basic counts."""
    try:
        db.execute(text("SELECT 1"))
        total = db.query(models.Book).count()
        users = db.query(models.User).count()
        return {"status": "ok", "database": "connected", "total_books": total, "total_users": users}
    except Exception as e:
        logger.error("Health check failed: %s", e)
        return {"status": "error", "database": "disconnected", "detail": str(e)}


# Books endpoints
@app.get("/api/books", response_model=BookList)
def list_books(
    title: Optional[str] = None,
    author: Optional[str] = None,
    category: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    books = crud.search_books(db, title=title, author=author, category=category, skip=skip, limit=limit)
    return {"books": books}


@app.post("/api/books", response_model=BookEnvelope, status_code=status.HTTP_201_CREATED)
def create_book(book: BookCreate, db: Session = Depends(get_db), _staff: models.User = Depends(auth_utils.get_librarian_user)):
    return {"message": "Book added successfully", "book": crud.add_book(book, db)}


@app.get("/api/books/{book_id}", response_model=BookEnvelope)
def retrieve_book(book_id: int, db: Session = Depends(get_db)):
    return {"book": crud.get_book_or_404(book_id, db)}


@app.put("/api/books/{book_id}", response_model=BookEnvelope)
def modify_book(book_id: int, book: BookUpdate, db: Session = Depends(get_db), _staff: models.User = Depends(auth_utils.get_librarian_user)):
    return {"message": "Book updated successfully", "book": crud.update_book(book_id, book, db)}


@app.delete("/api/books/{book_id}", response_model=MessageResponse)
def remove_book(book_id: int, db: Session = Depends(get_db), _staff: models.User = Depends(auth_utils.get_librarian_user)):
    crud.delete_book(book_id, db)
    return {"message": "Book deleted successfully"}


# Borrowing endpoints
@app.get("/api/borrowing", response_model=BorrowingList)
def list_borrowings(
    user_id: Optional[int] = Query(None, alias="userId"),
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth_utils.get_current_user),
):
    """Staff see active borrowings (optionally one user's); patrons see their own history."""
    if current_user.is_staff:
        borrowings = crud.list_borrowings(db, user_id=user_id, status=models.BorrowStatus.ACTIVE, skip=skip, limit=limit)
    else:
        borrowings = crud.list_borrowings(db, user_id=current_user.id, skip=skip, limit=limit)
    return {"borrowings": borrowings}


@app.post("/api/borrowing", response_model=BorrowResult, status_code=status.HTTP_201_CREATED)
def borrow(payload: BorrowRequest, db: Session = Depends(get_db), current_user: models.User = Depends(auth_utils.get_current_user)):
    borrowing = circulation.borrow_book(db, payload.book_id, current_user, user_id=payload.user_id)
    return {"message": "Book borrowed successfully", "borrowing": borrowing}


@app.post("/api/borrowing/return", response_model=ReturnResult)
def return_borrowed(payload: BorrowingAction, db: Session = Depends(get_db), current_user: models.User = Depends(auth_utils.get_current_user)):
    borrowing, fine = circulation.return_book(db, payload.borrowing_id, current_user)
    return {"message": "Book returned successfully", "borrowing": borrowing, "fine": fine}


@app.post("/api/borrowing/renew", response_model=RenewResult)
def renew(payload: BorrowingAction, db: Session = Depends(get_db), current_user: models.User = Depends(auth_utils.get_current_user)):
    borrowing = circulation.renew_borrowing(db, payload.borrowing_id, current_user)
    return {
        "message": "Book renewed successfully",
        "borrowing": borrowing,
        "new_due_date": borrowing.due_date,
        "renewals_remaining": circulation.renewals_remaining(borrowing),
    }


# Reservations endpoints
@app.get("/api/reservations", response_model=ReservationList)
def list_resv(skip: int = 0, limit: int = 100, db: Session = Depends(get_db), current_user: models.User = Depends(auth_utils.get_current_user)):
    user_id = None if current_user.is_staff else current_user.id
    return {"reservations": crud.list_reservations(db, user_id=user_id, skip=skip, limit=limit)}


@app.post("/api/reservations", response_model=ReservationResult, status_code=status.HTTP_201_CREATED)
def create_resv(payload: ReservationCreate, db: Session = Depends(get_db), current_user: models.User = Depends(auth_utils.get_current_user)):
    reservation = circulation.create_reservation(db, payload.book_id, current_user, notes=payload.notes)
    return {"message": "Borrow request submitted successfully", "reservation": reservation}


@app.patch("/api/reservations/{resv_id}", response_model=ReservationResult)
def process_resv(
    resv_id: int,
    payload: ReservationAction,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth_utils.get_librarian_user),
):
    if payload.action == "approve":
        reservation, borrowing = circulation.approve_reservation(db, resv_id, current_user, notes=payload.notes)
        return {
            "message": "Borrow request approved and book issued successfully",
            "reservation": reservation,
            "borrowing": borrowing,
        }
    reservation = circulation.reject_reservation(db, resv_id, current_user, notes=payload.notes)
    return {"message": "Borrow request rejected successfully", "reservation": reservation}


# Fines endpoints
@app.get("/api/fines", response_model=FineList)
def list_fines_endpoint(
    unpaid: bool = False,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth_utils.get_current_user),
):
    user_id = None if current_user.is_staff else current_user.id
    return {"fines": crud.list_fines(db, user_id=user_id, unpaid_only=unpaid, skip=skip, limit=limit)}


@app.post("/api/fines/{fine_id}/pay", response_model=FineResult)
def pay_fine(fine_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(auth_utils.get_librarian_user)):
    fine = circulation.pay_fine(db, fine_id, current_user)
    return {"message": "Fine marked as paid", "fine": fine}


# Stats
@app.get("/api/stats", response_model=StatsResponse)
def stats(db: Session = Depends(get_db), _staff: models.User = Depends(auth_utils.get_librarian_user)):
    now = models.utcnow()
    return {"stats": crud.library_stats(db, now), "overdue_books": crud.overdue_borrowings(db, now)}


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=9000,
        reload=True
    )
