from uuid import UUID

from sqlalchemy.orm import Session

from app.models.customer import Customer
from app.schemas.customer import CustomerCreate


class CustomerRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_all(self, skip: int = 0, limit: int = 100) -> list[Customer]:
        return self.db.query(Customer).offset(skip).limit(limit).all()

    def get_by_id(self, customer_id: UUID) -> Customer | None:
        return self.db.query(Customer).filter(Customer.id == customer_id).first()

    def get_by_external_id(self, external_id: str) -> Customer | None:
        return self.db.query(Customer).filter(Customer.external_id == external_id).first()

    def create(self, data: CustomerCreate) -> Customer:
        customer = Customer(
            external_id=data.external_id,
            name=data.name,
            email=data.email,
        )
        self.db.add(customer)
        self.db.commit()
        self.db.refresh(customer)
        return customer

    def set_remote_customer_id(self, customer: Customer, remote_customer_id: str) -> Customer:
        customer.remote_customer_id = remote_customer_id  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(customer)
        return customer
