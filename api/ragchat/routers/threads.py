"""
Threads router — chat history endpoints.

Lists the caller's threads and pages through a thread's turns.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ragchat.core.errors import DuplicateThreadError, ThreadNotFoundError
from ragchat.core.security import UserClaims, require_authenticated_user
from ragchat.models.threads import Thread, ThreadMetadata
from ragchat.services.thread_store import ThreadStore

router = APIRouter(prefix="/threads", tags=["threads"])


def get_thread_store(request: Request) -> ThreadStore:
    """Thread store created in the application lifespan."""
    return request.app.state.thread_store


@router.get("", response_model=list[ThreadMetadata], response_model_by_alias=True)
async def list_threads(
    user: UserClaims = Depends(require_authenticated_user),
    store: ThreadStore = Depends(get_thread_store),
) -> list[ThreadMetadata]:
    """The caller's threads, most recently updated first."""
    return await store.list_threads(user.user_id)


@router.get("/{thread_id}", response_model=Thread, response_model_by_alias=True)
async def get_thread(
    thread_id: str,
    before: int | None = Query(
        None, ge=0, description="Only turns created before this epoch-ms cursor"
    ),
    limit: int = Query(10, ge=1, le=100),
    user: UserClaims = Depends(require_authenticated_user),
    store: ThreadStore = Depends(get_thread_store),
) -> Thread:
    """One page of a thread's turns, newest first."""
    try:
        return await store.get_thread(user.user_id, thread_id, before=before, limit=limit)
    except ThreadNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found")
    except DuplicateThreadError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Thread data is inconsistent",
        )
