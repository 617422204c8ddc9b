"""Script to register a user."""
import argparse
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.database import SessionLocal, init_db
from app.exceptions import AppError
from app.models.user import UserRole
from app.services.user_service import UserService


def create_user(args: argparse.Namespace) -> int:
    """
    Register a user from parsed command-line arguments.

    Returns:
        Process exit code
    """
    init_db()
    db = SessionLocal()
    try:
        user = UserService(db).register_user(
            email=args.email,
            name=args.name,
            code=args.code,
            signature=args.signature,
            email_preference=args.email_mode,
            role=UserRole.ADMIN if args.admin else UserRole.EMPLOYEE,
            gmail_access_token=args.gmail_token
        )
        print("User created successfully!")
        print(f"Name: {user.name}")
        print(f"ID: {user.id}")
        return 0
    except AppError as e:
        print(f"Error creating user: {e.message}")
        return 1
    finally:
        db.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Register a user")
    parser.add_argument("email")
    parser.add_argument("name")
    parser.add_argument("--code", help="Three-letter employee code")
    parser.add_argument("--signature", help="Email signature")
    parser.add_argument("--email-mode", choices=["manual", "automatic"], default="manual")
    parser.add_argument("--gmail-token", help="Gmail OAuth access token")
    parser.add_argument("--admin", action="store_true")
    return parser


if __name__ == "__main__":
    sys.exit(create_user(build_parser().parse_args()))
