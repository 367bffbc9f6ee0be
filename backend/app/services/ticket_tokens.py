"""
Ticket verification tokens.

On confirmation the booking gets a signed token embedding who may enter and
for which event; the door scanner opens the verification URL. The booking
stores only the URL and never interprets it.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from urllib.parse import urlencode

import jwt

from app.core.config import Settings

TOKEN_AUDIENCE = "ticket-verification"


@dataclass(frozen=True)
class TicketToken:
    token: str
    verification_url: str


class TicketTokenIssuer:
    def __init__(self, secret: str, base_url: str, algorithm: str = "HS256"):
        self.secret = secret
        self.base_url = base_url.rstrip("/")
        self.algorithm = algorithm

    @classmethod
    def from_settings(cls, settings: Settings) -> "TicketTokenIssuer":
        return cls(settings.SECRET_KEY, settings.APP_BASE_URL, settings.ALGORITHM)

    def issue(self, fields: dict, issued_at: datetime) -> TicketToken:
        claims = {
            **fields,
            "aud": TOKEN_AUDIENCE,
            "issued_at": issued_at.isoformat(),
        }
        token = jwt.encode(claims, self.secret, algorithm=self.algorithm)
        url = f"{self.base_url}/api/v1/tickets/verify?{urlencode({'token': token})}"
        return TicketToken(token=token, verification_url=url)

    def decode(self, token: str) -> Optional[dict]:
        """Claims of a token this issuer signed, or None if it was tampered with."""
        try:
            return jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=TOKEN_AUDIENCE,
            )
        except jwt.PyJWTError:
            return None
