"""
Drop every library table and create the schema again from the models.
All users, books and circulation history are lost.

Usage:
    python reset_db.py --yes
    python reset_db.py --yes --seed
"""
import argparse
import sys

from database import Base, engine
import models  # noqa: F401  registers the tables
import seed


def reset(bind=engine):
    Base.metadata.drop_all(bind=bind)
    Base.metadata.create_all(bind=bind)
    return sorted(Base.metadata.tables)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--yes", action="store_true", help="confirm that all data may be deleted")
    parser.add_argument("--seed", action="store_true", help="load the demo accounts and books afterwards")
    args = parser.parse_args(argv)

    if not args.yes:
        print("Refusing to reset", engine.url.render_as_string(hide_password=True), "without --yes")
        return 1

    tables = reset()
    print("Recreated tables:", ", ".join(tables))
    if args.seed:
        seed.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
