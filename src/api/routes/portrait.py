"""FastAPI route for portrait generation."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from src.api.schemas import PortraitImage, PortraitRequest, PortraitResponse
from src.models import PurchaseHistoryRecord
from src.services.gateway_provider import get_image_service
from src.services.image_service import ImageService, build_portrait_prompt

logger = logging.getLogger(__name__)

router = APIRouter(tags=["portrait"])


def get_images() -> ImageService:
    """Dependency to get the process-global ImageService."""
    return get_image_service()


@router.post("/generate-portrait", response_model=PortraitResponse)
async def generate_portrait(
    body: PortraitRequest,
    images: ImageService = Depends(get_images),
) -> PortraitResponse:
    """Render a portrait from the user's purchases and style choices.

    Raises:
        PortraitGenerationError: Provider misconfigured, failed or timed out (502).
    """
    records = [
        PurchaseHistoryRecord(brand_id="", brand=p.brand, product_names=p.product_names)
        for p in body.purchase_data
    ]
    prompt = build_portrait_prompt(
        records, gender=body.gender, traits=body.traits, style=body.image_style,
    )
    generated = await images.generate(prompt, body.model)
    logger.info("Portrait generated: %s", generated.filename)
    return PortraitResponse(
        image=PortraitImage(**generated.to_dict()),
        model=generated.model,
        provider=generated.provider,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
