# app/services/referral_code.py
import re
import secrets
from sqlalchemy.orm import Session

from app.crud import member as crud_member

# No 0/O, 1/I to keep codes readable when dictated
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_SUFFIX_LENGTH = 6
REFERRAL_CODE_PATTERN = re.compile(r"^[A-Z]+-[A-Z0-9]{6}$")


def generate_referral_code(name: str | None) -> str:
    """Builds a FIRSTNAME-ABC123 code, e.g. MIKE-A2X9K7."""
    first_part = re.split(r"[\s@]", name or "")[0]
    first_name = re.sub(r"[^A-Z]", "", first_part.upper())[:10]
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_SUFFIX_LENGTH))
    return f"{first_name or 'USER'}-{suffix}"


def is_valid_referral_code(code: str | None) -> bool:
    return bool(code) and REFERRAL_CODE_PATTERN.match(code) is not None


def issue_unique_referral_code(db: Session, name: str | None) -> str:
    """Generates a code that no member holds yet."""
    new_code = generate_referral_code(name)
    # Collisions are very unlikely, but the column is unique
    while crud_member.get_member_by_referral_code(db, code=new_code):
        new_code = generate_referral_code(name)
    return new_code
