# chambers_app/models/user.py

import enum

from flask_login import UserMixin
from sqlalchemy import Enum
from werkzeug.security import check_password_hash, generate_password_hash

from .base import BaseModel, db


class UserRole(str, enum.Enum):
    CLERK = "clerk"
    BARRISTER = "barrister"
    ADMIN = "admin"


class User(UserMixin, BaseModel):
    """Chambers staff account used to own and observe import jobs."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=True)
    role = db.Column(Enum(UserRole, name="user_role_enum"), default=UserRole.CLERK, nullable=False)
    is_active_account = db.Column(db.Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<User {self.username}>"

    @property
    def is_active(self):
        return bool(self.is_active_account)

    @property
    def is_elevated(self):
        """Admins can observe and cancel every import, not just their own."""
        return self.role == UserRole.ADMIN

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)
