"""
Caller identity as handed over by the authentication layer in front of the
service. That layer verifies credentials and forwards the user id and, for
staff requests, the merchant the caller acts for.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from .database import get_db
from .errors import NotFoundError
from .models import Merchant


def get_current_user_id(x_user_id: Optional[int] = Header(None)) -> int:
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id


def get_optional_user_id(x_user_id: Optional[int] = Header(None)) -> Optional[int]:
    return x_user_id


def get_current_merchant_id(
    x_merchant_id: Optional[int] = Header(None),
    db: Session = Depends(get_db)
) -> int:
    if x_merchant_id is None:
        raise HTTPException(status_code=401, detail="Merchant authentication required")
    if not db.query(Merchant.id).filter(Merchant.id == x_merchant_id).first():
        raise NotFoundError("Merchant not found")
    return x_merchant_id
