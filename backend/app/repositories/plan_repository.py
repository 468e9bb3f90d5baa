from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.plan import SubscriptionPlan
from app.schemas.plan import PlanCreate, PlanUpdate


class PlanRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_all(
        self, skip: int = 0, limit: int = 100, active_only: bool = False
    ) -> list[SubscriptionPlan]:
        query = self.db.query(SubscriptionPlan)
        if active_only:
            query = query.filter(SubscriptionPlan.is_active.is_(True))
        return query.order_by(SubscriptionPlan.created_at.desc()).offset(skip).limit(limit).all()

    def count(self) -> int:
        return self.db.query(func.count(SubscriptionPlan.id)).scalar() or 0

    def get_by_id(self, plan_id: UUID) -> SubscriptionPlan | None:
        return self.db.query(SubscriptionPlan).filter(SubscriptionPlan.id == plan_id).first()

    def create(self, data: PlanCreate) -> SubscriptionPlan:
        plan = SubscriptionPlan(
            name=data.name,
            description=data.description,
            price=data.price,
            currency=data.currency.lower(),
            billing_cycle=data.billing_cycle.value,
            is_active=data.is_active,
            trial_allowed=data.trial_allowed,
            trial_duration_days=data.trial_duration_days,
        )
        self.db.add(plan)
        self.db.commit()
        self.db.refresh(plan)
        return plan

    def update(self, plan_id: UUID, data: PlanUpdate) -> SubscriptionPlan | None:
        plan = self.get_by_id(plan_id)
        if not plan:
            return None
        for key, value in data.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(plan, key, value)
        self.db.commit()
        self.db.refresh(plan)
        return plan

    def set_remote_ids(self, plan: SubscriptionPlan, **remote_fields: Any) -> SubscriptionPlan:
        """Persist gateway identifiers (product id, price ids, synced price)."""
        for key, value in remote_fields.items():
            setattr(plan, key, value)
        self.db.commit()
        self.db.refresh(plan)
        return plan
