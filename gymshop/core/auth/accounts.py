from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from gymshop.core.auth.passwords import hash_password, validate_password_strength, verify_password
from gymshop.core.auth.tokens import TokenError, decode_token, issue_access_token, issue_tokens
from gymshop.core.errors import Conflict, NotFound, Unauthorized, ValidationFailed
from gymshop.core.shop.models import User
from gymshop.core.shop.tables import Tables
from gymshop.core.storage import Database

log = logging.getLogger("gymshop.auth")


class AccountService:
    def __init__(self, db: Database):
        self.db = db
        self.t = Tables(db)

    def _by_email(self, email: str) -> Optional[User]:
        e = (email or "").strip().lower()
        return self.t.users.find_one(lambda u: u.email == e)

    def _session(self, user: User) -> Dict[str, Any]:
        out = issue_tokens(user.id, [user.role])
        out["user"] = user.public()
        return out

    def register(
        self,
        *,
        email: str,
        password: str,
        mobile_number: str,
        first_name: str = "",
        last_name: str = "",
        role: str = "member",
    ) -> Dict[str, Any]:
        if not email or not password or not mobile_number:
            raise ValidationFailed("email, password and mobile_number are required")
        validate_password_strength(password)

        with self.db.transaction():
            if self._by_email(email) is not None:
                raise Conflict("Email already registered")
            user = User(
                email=email.strip().lower(),
                password_hash=hash_password(password),
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                mobile_number=mobile_number.strip(),
                role=role,
            )
            self.t.users.put(user)

        log.info("registered user id=%s", user.id)
        return self._session(user)

    def login(self, *, email: str, password: str) -> Dict[str, Any]:
        user = self._by_email(email)
        if user is None or not verify_password(password, user.password_hash):
            raise Unauthorized("Invalid email or password")
        return self._session(user)

    def refresh(self, refresh_token: str) -> Dict[str, Any]:
        try:
            claims = decode_token(refresh_token, kind="refresh")
        except TokenError:
            raise Unauthorized("Invalid refresh token")
        user = self.t.users.get(str(claims.get("sub")))
        if user is None:
            raise Unauthorized("Invalid refresh token")
        return {"access_token": issue_access_token(user.id, [user.role]), "token_type": "bearer"}

    def get(self, user_id: str) -> User:
        user = self.t.users.get(user_id)
        if user is None:
            raise NotFound("User not found")
        return user
