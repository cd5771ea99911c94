from typing import Optional

from sqlalchemy.orm import Session

from tripengine.models import Passenger


class TokenResolver:
    """Maps an opaque QR token to a passenger id"""

    def resolve(self, token: str) -> Optional[int]:
        raise NotImplementedError


class DatabaseTokenResolver(TokenResolver):
    """Looks the token up on active passengers"""

    def __init__(self, db: Session):
        self.db = db

    def resolve(self, token: str) -> Optional[int]:
        row = self.db.query(Passenger.id).filter(
            Passenger.qr_token == token,
            Passenger.is_active == True,
        ).first()
        return row.id if row else None
