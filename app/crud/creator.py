# app/crud/creator.py
from sqlalchemy.orm import Session
from app.models.creator import Creator

def get_all_creators(db: Session) -> list[Creator]:
    return db.query(Creator).order_by(Creator.id).all()

def get_creator_by_company_id(db: Session, company_id: str) -> Creator | None:
    return db.query(Creator).filter(Creator.company_id == company_id).first()

def get_or_create_creator(
    db: Session,
    company_id: str,
    company_name: str | None = None,
    product_url: str | None = None
) -> Creator:
    """
    Finds the creator by company ID or adds a new one to the session.
    Requires an outer db.commit().
    """
    creator = get_creator_by_company_id(db, company_id)
    if creator:
        return creator
    creator = Creator(
        company_id=company_id,
        company_name=company_name or "Community",
        product_url=product_url,
    )
    db.add(creator)
    db.flush()
    return creator
