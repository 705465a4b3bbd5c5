import logging
import secrets
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from seatflow import config
from seatflow.database import AccessCode, Company
from seatflow.metrics import code_redemptions_total
from seatflow.schemas import CodeBatchResult, GeneratedCode, RedemptionResult

logger = logging.getLogger(__name__)

# No 0/O, 1/I, 5/S
CODE_ALPHABET = "2346789ABCDEFGHJKLMNPQRTUVWXYZ"
SUFFIX_LENGTH = 8
MAX_ATTEMPTS_PER_CODE = 5


def make_code(company_code: str) -> str:
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"{company_code}-{suffix}"


def generate_codes(db: Session, company_id: str, quantity: int) -> CodeBatchResult:
    if quantity < 1 or quantity > config.MAX_CODES_PER_BATCH:
        return CodeBatchResult(status="invalid_quantity")

    company = db.get(Company, company_id)
    if not company:
        return CodeBatchResult(status="company_not_found")

    # Issuance is not checked against seats_total; see DESIGN.md
    generated = []
    seen = set()
    for _ in range(quantity):
        for attempt in range(MAX_ATTEMPTS_PER_CODE):
            code = make_code(company.code)
            if code in seen:
                continue
            try:
                with db.begin_nested():
                    db.add(AccessCode(code=code, company_id=company_id, status="active"))
            except IntegrityError:
                logger.info(f"Access code collision on attempt {attempt + 1}, redrawing")
                continue
            seen.add(code)
            generated.append(GeneratedCode(code=code))
            break
        else:
            db.rollback()
            raise RuntimeError(f"Could not draw a unique access code for {company_id}")

    db.commit()
    logger.info(f"Generated {len(generated)} access codes for company {company_id}")
    return CodeBatchResult(status="generated", codes=generated)


def redeem_code(db: Session, code: str, user_id: str) -> RedemptionResult:
    """Flip an active code to redeemed. Does not commit.

    The guarded UPDATE is the whole decision: of several concurrent
    callers only one can match ``status = 'active'``.
    """
    updated = db.execute(
        update(AccessCode)
        .where(AccessCode.code == code)
        .where(AccessCode.status == "active")
        .values(
            status="redeemed",
            redeemed_by=user_id,
            redeemed_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )

    row = db.execute(
        select(AccessCode.status, AccessCode.company_id).where(AccessCode.code == code)
    ).first()

    if updated.rowcount == 1:
        company_id = row.company_id
        # Not bounded by seats_total; see DESIGN.md
        db.execute(
            update(Company)
            .where(Company.id == company_id)
            .values(seats_used=Company.seats_used + 1)
            .execution_options(synchronize_session=False)
        )
        code_redemptions_total.labels(status="redeemed").inc()
        logger.info(f"Access code {code} redeemed by {user_id}")
        return RedemptionResult(status="redeemed", company_id=company_id)

    if row is None:
        status = "code_not_found"
    elif row.status == "revoked":
        status = "code_revoked"
    else:
        status = "code_already_redeemed"

    code_redemptions_total.labels(status=status).inc()
    logger.info(f"Access code {code} not redeemed: {status}")
    return RedemptionResult(status=status, company_id=row.company_id if row else None)


def revoke_code(db: Session, code: str) -> bool:
    updated = db.execute(
        update(AccessCode)
        .where(AccessCode.code == code)
        .where(AccessCode.status == "active")
        .values(status="revoked")
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if updated.rowcount == 1:
        logger.info(f"Access code {code} revoked")
        return True
    return False
