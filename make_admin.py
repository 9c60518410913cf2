# make_admin.py
# Usage: python make_admin.py <username-or-email>

import sys

from app import create_app
from extensions import db
from models import User


def make_admin(login, app=None):
    """Promote an existing account to the admin role. Returns the user."""
    app = app or create_app()
    with app.app_context():
        user = User.query.filter((User.username == login) | (User.email == login.lower())).first()
        if user is None:
            raise LookupError(f"No user with username or email {login!r}")

        user.role = "admin"
        db.session.commit()
        app.logger.info(f"User {user.id} ({user.username}) promoted to admin")
        return user


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python make_admin.py <username-or-email>")
        sys.exit(1)
    promoted = make_admin(sys.argv[1])
    print(f"User (id={promoted.id}, username={promoted.username}) is now admin.")
