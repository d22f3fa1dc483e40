"""
Crew actions. Poking is limited per client and crew so a member cannot flood the crew.
"""

from fastapi import APIRouter, Depends, Request
from starlette.responses import Response

import config
from deps import get_push_client, get_store
from middleware import get_current_user
from notification_fanout import poke_crew
from rate_limit import limiter, poke_key
from schemas import PokeRequest

router = APIRouter()


@router.post("/{crew_id}/poke")
@limiter.limit(config.POKE_RATE_LIMIT, key_func=poke_key)
async def poke(
    request: Request,
    response: Response,
    crew_id: str,
    body: PokeRequest,
    current_user: dict = Depends(get_current_user),
    store=Depends(get_store),
    push=Depends(get_push_client),
):
    """
    Nudge crew members who are not up for it on body.date.
    403 unless the caller is up for it themselves.
    """
    result = poke_crew(store, push, crew_id, body.date, current_user["uid"])
    return result.model_dump()
