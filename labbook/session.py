"""Signed-in user session.

Authentication itself happens elsewhere; labbook only needs to know which
user id (if any) owns remote operations right now.
"""

import logging
from typing import Optional

from labbook.errors import NotAuthenticatedError

logger = logging.getLogger(__name__)


class UserSession:
    def __init__(self, user_id: Optional[str] = None):
        self._user_id = user_id or None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def is_signed_in(self) -> bool:
        return self._user_id is not None

    def require_user(self) -> str:
        """Current user id, or raise ``NotAuthenticatedError``."""
        if self._user_id is None:
            raise NotAuthenticatedError()
        return self._user_id

    def sign_in(self, user_id: str) -> None:
        if not user_id:
            raise ValueError("user_id must be non-empty")
        self._user_id = user_id
        logger.info(f"Signed in as {user_id}")

    def sign_out(self) -> None:
        if self._user_id is not None:
            logger.info(f"Signed out {self._user_id}")
        self._user_id = None
