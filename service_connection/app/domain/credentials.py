"""
Broker credentials handed to connecting clients.
"""

import hashlib
import hmac
import secrets
from typing import Optional

from ..models import BrokerCredentials


class CredentialIssuer:
    """Derives each session's broker password from a server-side secret.

    The password is HMAC-SHA256(secret, session_id): stable for the life of
    a session, so reconnects get the same password back, and unguessable
    without the secret. Without a configured secret a random one is drawn,
    which invalidates passwords of sessions opened before a restart.
    """

    def __init__(self, secret: Optional[str], host: str, port: int):
        self._secret = (secret or secrets.token_hex(32)).encode("utf-8")
        self.host = host
        self.port = port

    def password_for(self, session_id: str) -> str:
        return hmac.new(self._secret, session_id.encode("utf-8"), hashlib.sha256).hexdigest()

    def credentials_for(self, user_id: str, session_id: str) -> BrokerCredentials:
        return BrokerCredentials(
            username=user_id,
            password=self.password_for(session_id),
            host=self.host,
            port=self.port,
        )
