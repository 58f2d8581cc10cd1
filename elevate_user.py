"""
Change a user's role from the command line, e.g. to bootstrap a librarian.

Usage:
    python elevate_user.py librarian@library.com LIBRARIAN
"""
import argparse
import sys

from database import SessionLocal
import crud
import models


def run(email: str, role: models.UserRole) -> int:
    db = SessionLocal()
    try:
        user = crud.get_user_by_email(email, db)
        if not user:
            print("User not found:", email)
            return 1
        print("Before:", user.id, user.email, user.role.value, user.is_active)
        user.role = role
        user.is_active = True
        db.commit()
        db.refresh(user)
        print("After:", user.id, user.email, user.role.value, user.is_active)
        return 0
    finally:
        db.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("email")
    parser.add_argument("role", type=str.upper, choices=[r.value for r in models.UserRole])
    args = parser.parse_args(argv)
    return run(args.email, models.UserRole(args.role))


if __name__ == "__main__":
    sys.exit(main())
