"""Image generation usage API routes"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.exceptions import EntitlementError
from app.core.security import require_auth, require_internal_key
from app.db.session import get_db
from app.schemas.usage import ImageLimitResponse, parse_generation_result
from app.services.usage_service import get_image_limit, record_generation_result

router = APIRouter(prefix="/api/usage", tags=["usage"])
logger = logging.getLogger(__name__)


@router.get("/image-limit", response_model=ImageLimitResponse)
def image_limit_route(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Whether the caller may generate an image now"""
    try:
        return get_image_limit(db, user_id)
    except EntitlementError as e:
        raise HTTPException(e.status_code, e.message)


@router.post("/generation-result", dependencies=[Depends(require_internal_key)])
async def generation_result_route(request: Request, db: Session = Depends(get_db)):
    """Callback from the generation workflow; image results count against the user's limit"""
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(400, "Body must be JSON")

    try:
        result = parse_generation_result(body)
        outcome = record_generation_result(db, result)
    except EntitlementError as e:
        logger.error(f"Generation result rejected: {e}")
        raise HTTPException(e.status_code, e.message)

    if result.kind == "image" and not outcome["counted"]:
        logger.warning(f"Image generated for user {result.user_id} without remaining allowance")
    return {"kind": result.kind, **outcome}
