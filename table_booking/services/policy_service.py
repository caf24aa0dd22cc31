import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import ValidationError
from ..models import BookingPolicy
from ..schemas import PolicyUpdate

logger = logging.getLogger(__name__)


class BookingPolicyService:
    def __init__(self, db: Session):
        self.db = db

    def get_or_create(self, merchant_id: int) -> BookingPolicy:
        """Return the merchant's policy, creating it with defaults on first access."""
        policy = self.db.query(BookingPolicy).filter(
            BookingPolicy.merchant_id == merchant_id
        ).first()
        if policy:
            return policy

        policy = BookingPolicy(merchant_id=merchant_id)
        self.db.add(policy)
        try:
            self.db.commit()
        except IntegrityError:
            # Another request created it first
            self.db.rollback()
            return self.db.query(BookingPolicy).filter(
                BookingPolicy.merchant_id == merchant_id
            ).one()
        self.db.refresh(policy)
        logger.info("Created default booking policy for merchant %s", merchant_id)
        return policy

    def update(self, merchant_id: int, data: PolicyUpdate) -> BookingPolicy:
        """Merge the provided fields into the policy."""
        policy = self.get_or_create(merchant_id)
        changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}

        min_size = changes.get("min_party_size", policy.min_party_size)
        max_size = changes.get("max_party_size", policy.max_party_size)
        if min_size > max_size:
            raise ValidationError(
                "Minimum party size cannot exceed maximum party size",
                details=[{"field": "min_party_size", "message": f"must be <= {max_size}"}],
            )

        for field, value in changes.items():
            setattr(policy, field, value)
        self.db.commit()
        self.db.refresh(policy)
        logger.info("Merchant %s updated booking policy: %s", merchant_id, sorted(changes))
        return policy
