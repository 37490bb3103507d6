from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from dojo_notices.core.errors import (
    DeliveryUnavailable,
    InvalidAudience,
    InvalidNotice,
    NotFound,
    StoreUnavailable,
)
from dojo_notices.models.notice import PublishResult, ReconcileResult
from dojo_notices.schemas.notice_schema import NoticeCreateIn, NoticeOut, NoticeUpdateIn
from dojo_notices.services.delivery_window import ui_status
from dojo_notices.services.notice_service import NoticeService
import logging

logger = logging.getLogger(__name__)

router = APIRouter()
notice_service = NoticeService()


def get_notice_service() -> NoticeService:
    return notice_service


def _with_ui_status(row: Dict[str, Any], service: NoticeService) -> Dict[str, Any]:
    data = dict(row)
    data["ui_status"] = ui_status(row.get("start_time"), row.get("end_time"), row.get("status"), service.clock())
    return data


def _notice_out(row: Dict[str, Any], service: NoticeService) -> NoticeOut:
    return NoticeOut(**_with_ui_status(row, service))


@router.post("/dojos/{dojo_id}/notices", response_model=PublishResult, status_code=status.HTTP_201_CREATED)
async def publish_notice(dojo_id: str, payload: NoticeCreateIn, service: NoticeService = Depends(get_notice_service)):
    """Publish a notice. A non-empty fanout.failed means the notice exists but some inboxes were not written."""
    try:
        return await service.publish_notice(dojo_id, **payload.model_dump())
    except (InvalidAudience, InvalidNotice) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreUnavailable as e:
        logger.error(f"Store unavailable while publishing notice: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Notice store unavailable")
    except Exception as e:
        logger.error(f"Error publishing notice: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to publish notice")


@router.patch("/dojos/{dojo_id}/notices/{notice_id}", response_model=ReconcileResult)
async def update_notice(
    dojo_id: str,
    notice_id: str,
    payload: NoticeUpdateIn,
    service: NoticeService = Depends(get_notice_service),
):
    """Update a notice; inbox projections follow audience changes."""
    patch = payload.model_dump(exclude_unset=True)
    if not patch:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields provided")
    try:
        return await service.update_notice(dojo_id, notice_id, patch)
    except NotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (InvalidAudience, InvalidNotice) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreUnavailable as e:
        logger.error(f"Store unavailable while updating notice {notice_id}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Notice store unavailable")
    except Exception as e:
        logger.error(f"Error updating notice {notice_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to update notice")


@router.get("/dojos/{dojo_id}/notices", response_model=List[NoticeOut])
async def list_notices(
    dojo_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    service: NoticeService = Depends(get_notice_service),
):
    """List every notice of the dojo (staff view)."""
    try:
        rows = await service.list_notices(dojo_id, limit)
        return [_notice_out(r, service) for r in rows]
    except Exception as e:
        logger.error(f"Error listing notices for dojo {dojo_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to list notices")


@router.get("/dojos/{dojo_id}/notices/{notice_id}", response_model=NoticeOut)
async def get_notice(
    dojo_id: str,
    notice_id: str,
    member_uid: Optional[str] = None,
    service: NoticeService = Depends(get_notice_service),
):
    """Read one notice. ``degraded`` is set when it came from the member's inbox."""
    try:
        view = await service.get_notice(dojo_id, notice_id, member_uid)
        return _notice_out(view.model_dump(), service)
    except NotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except DeliveryUnavailable as e:
        logger.warning(f"Notice {notice_id} unavailable for {member_uid}: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="This announcement is not available")
    except Exception as e:
        logger.error(f"Error reading notice {notice_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to load notice")


@router.post("/dojos/{dojo_id}/notices/{notice_id}/fanout/retry", response_model=ReconcileResult)
async def retry_fanout(dojo_id: str, notice_id: str, service: NoticeService = Depends(get_notice_service)):
    """Retry inbox writes that failed during publish or update."""
    try:
        return await service.retry_fanout(dojo_id, notice_id)
    except NotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        logger.error(f"Error retrying fan-out of notice {notice_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to retry fan-out")


@router.websocket("/dojos/{dojo_id}/members/{member_uid}/notices/ws")
async def member_notice_stream(
    websocket: WebSocket,
    dojo_id: str,
    member_uid: str,
    service: NoticeService = Depends(get_notice_service),
):
    """Push the member's merged notice list on every change."""
    await websocket.accept()

    async def send_rows(rows):
        payload = [_with_ui_status(r, service) for r in rows]
        await websocket.send_json({"notices": jsonable_encoder(payload)})

    async def send_error(exc):
        await websocket.send_json({"error": str(exc)})

    subscription = service.subscribe_for_member(dojo_id, member_uid, send_rows, send_error)
    logger.info(f"Notice stream opened for {dojo_id}/{member_uid}")
    try:
        while True:
            # client messages are ignored; reading detects the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"Notice stream closed for {dojo_id}/{member_uid}")
    finally:
        await subscription.cancel()
