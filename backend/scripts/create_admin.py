"""Create an initial admin user for the application.

Usage:
    python -m scripts.create_admin --email admin@example.com --name "Admin" --password yourpassword
"""
import argparse

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from forgechat.core.config import settings
from forgechat.core.database import Base
from forgechat.core.security import hash_password
from forgechat.models import User


def create_admin(session: Session, email: str, full_name: str, password: str) -> User | None:
    """Insert an active admin user; returns None when the email is taken."""
    existing = session.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if existing:
        return None

    user = User(
        email=email,
        full_name=full_name,
        hashed_password=hash_password(password),
        role="admin",
        is_active=True,
    )
    session.add(user)
    session.commit()
    return user


def main():
    parser = argparse.ArgumentParser(description="Create an admin user")
    parser.add_argument("--email", required=True, help="Admin email address")
    parser.add_argument("--name", required=True, help="Full name")
    parser.add_argument("--password", required=True, help="Password")
    args = parser.parse_args()

    engine = create_engine(settings.database_url_sync)
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        if create_admin(session, args.email, args.name, args.password) is None:
            print(f"User with email {args.email} already exists.")
            return
        print(f"Admin user created: {args.email}")


if __name__ == "__main__":
    main()
