"""
Populate an empty database with demo accounts and a few books.
Safe to re-run: existing emails and ISBNs are left alone.

Usage:
    python seed.py
"""
from database import SessionLocal, engine, Base
import auth_utils
import crud
import models

USERS = [
    {"email": "admin@library.com", "password": "admin123", "name": "Admin User", "role": models.UserRole.ADMIN,
     "phone": "+1-555-0001", "address": "123 Admin Street, Library City"},
    {"email": "librarian@library.com", "password": "lib123", "name": "Librarian User", "role": models.UserRole.LIBRARIAN,
     "phone": "+1-555-0002", "address": "456 Librarian Avenue, Book Town"},
    {"email": "patron@library.com", "password": "patron123", "name": "Patron User", "role": models.UserRole.PATRON,
     "phone": "+1-555-0003", "address": "789 Reader Road, Knowledge City"},
]

BOOKS = [
    {"title": "Effective Java", "author": "Joshua Bloch", "isbn": "978-0134685991", "publisher": "Addison-Wesley",
     "published_year": 2017, "category": "Programming", "total_copies": 3, "location": "A-101"},
    {"title": "Domain-Driven Design", "author": "Eric Evans", "isbn": "978-0321125217", "publisher": "Addison-Wesley",
     "published_year": 2003, "category": "Software Engineering", "total_copies": 2, "location": "A-102"},
    {"title": "Clean Code", "author": "Robert C. Martin", "isbn": "978-0132350884", "publisher": "Prentice Hall",
     "published_year": 2008, "category": "Programming", "total_copies": 4, "location": "A-103"},
    {"title": "The Pragmatic Programmer", "author": "David Thomas, Andrew Hunt", "isbn": "978-0135957059",
     "publisher": "Addison-Wesley", "published_year": 2019, "category": "Programming", "total_copies": 2, "location": "A-104"},
]


def run():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        for data in USERS:
            if crud.get_user_by_email(data["email"], db):
                continue
            data = dict(data)
            password = data.pop("password")
            db.add(models.User(hashed_password=auth_utils.get_password_hash(password), **data))
            print("Created user:", data["email"])
        for data in BOOKS:
            if db.query(models.Book).filter(models.Book.isbn == data["isbn"]).first():
                continue
            db.add(models.Book(available_copies=data["total_copies"], **data))
            print("Added book:", data["title"])
        db.commit()
    finally:
        db.close()
    print("Seeding finished.")


if __name__ == "__main__":
    run()
