"""
Change-event ingestion. The producer posts one event per document change.
"""

from fastapi import APIRouter, Depends

from deps import get_push_client, get_store
from events import dispatch_event
from middleware import verify_event_secret
from rate_limit import limiter
from schemas import ChangeEvent

router = APIRouter()


@router.post("", dependencies=[Depends(verify_event_secret)])
@limiter.exempt
async def ingest_event(
    event: ChangeEvent,
    store=Depends(get_store),
    push=Depends(get_push_client),
):
    return dispatch_event(store, push, event)
