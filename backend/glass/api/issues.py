"""
Issues API Routes
=================

REST and WebSocket endpoints for the remediation workflow.

Endpoints:
- GET    /api/v1/issues                      - List issues
- POST   /api/v1/issues/refresh              - Pull issues from Sentry
- GET    /api/v1/issues/{id}                 - Get issue
- POST   /api/v1/issues/{id}/refresh         - Re-fetch issue with latest event
- POST   /api/v1/issues/{id}/transitions     - Apply a raw workflow action
- POST   /api/v1/issues/{id}/analyze         - Start analysis
- POST   /api/v1/issues/{id}/retry           - Restart analysis after a failure
- POST   /api/v1/issues/{id}/approve         - Approve proposal and start fix
- POST   /api/v1/issues/{id}/revise          - Request changes to the proposal
- POST   /api/v1/issues/{id}/reject          - Reject proposal
- POST   /api/v1/issues/{id}/reset           - Back to Pending
- GET    /api/v1/issues/{id}/conversation    - Agent transcript
- GET    /api/v1/issues/{id}/proposal        - Latest proposal
- WS     /api/v1/issues/{id}/stream          - Live agent events
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from glass.api.deps import get_workflow_service
from glass.core.config import settings
from glass.core.errors import IssueNotFoundError
from glass.core.models import ConversationPhase
from glass.core.schemas import (
    ConversationMessageResponse,
    ErrorResponse,
    IssueListResponse,
    IssueResponse,
    ProposalResponse,
    RefreshResponse,
    RevisionRequest,
    TransitionRequest,
)
from glass.core.workflow.phases import build_action
from glass.core.workflow.service import MANUAL_ACTIONS, WorkflowService

router = APIRouter(prefix="/issues", tags=["issues"])

# Close code sent when the issue does not exist
WS_CLOSE_NOT_FOUND = 4404

ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Issue not found"},
    409: {"model": ErrorResponse, "description": "Action not legal in the current phase"},
}


# ==========================================================================
# Issues
# ==========================================================================

@router.get("", response_model=IssueListResponse)
async def list_issues(
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: WorkflowService = Depends(get_workflow_service),
):
    """List issues, most recently updated first."""
    items, total = await service.list_issues(limit=limit, offset=offset)
    return IssueListResponse(
        items=[IssueResponse.from_issue(issue) for issue in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/refresh",
    response_model=RefreshResponse,
    responses={502: {"model": ErrorResponse, "description": "Issue source failed"}},
)
async def refresh_issues(service: WorkflowService = Depends(get_workflow_service)):
    """Pull issues from the source. Existing workflow phases are preserved."""
    result = await service.refresh()
    return RefreshResponse(fetched=result.fetched, upserted=result.upserted, failed=result.failed)


@router.get("/{issue_id}", response_model=IssueResponse, responses=ERROR_RESPONSES)
async def get_issue(issue_id: str, service: WorkflowService = Depends(get_workflow_service)):
    return IssueResponse.from_issue(await service.get_issue(issue_id))


@router.post("/{issue_id}/refresh", response_model=IssueResponse, responses=ERROR_RESPONSES)
async def refresh_issue(issue_id: str, service: WorkflowService = Depends(get_workflow_service)):
    """Re-fetch one issue with its latest event (stacktrace, breadcrumbs, context)."""
    return IssueResponse.from_issue(await service.refresh_issue(issue_id))


# ==========================================================================
# Workflow Actions
# ==========================================================================

@router.post("/{issue_id}/transitions", response_model=IssueResponse, responses=ERROR_RESPONSES)
async def apply_transition(
    issue_id: str,
    request: TransitionRequest,
    service: WorkflowService = Depends(get_workflow_service),
):
    """
    Apply a raw workflow action.

    Only actions that need no session, worktree or proposal are accepted
    here (fail, reset, reject, complete_fix); the others go through their
    dedicated endpoints.
    """
    if request.action not in MANUAL_ACTIONS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Action '{request.action.value}' must be requested through its dedicated endpoint",
        )
    try:
        action = build_action(request.action, request.payload)
    except TypeError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid payload for '{request.action.value}': {e}",
        )
    return IssueResponse.from_issue(await service.request_transition(issue_id, action))


@router.post("/{issue_id}/analyze", response_model=IssueResponse, responses=ERROR_RESPONSES)
async def start_analysis(issue_id: str, service: WorkflowService = Depends(get_workflow_service)):
    return IssueResponse.from_issue(await service.start_analysis(issue_id))


@router.post("/{issue_id}/retry", response_model=IssueResponse, responses=ERROR_RESPONSES)
async def retry_analysis(issue_id: str, service: WorkflowService = Depends(get_workflow_service)):
    return IssueResponse.from_issue(await service.retry(issue_id))


@router.post("/{issue_id}/approve", response_model=IssueResponse, responses=ERROR_RESPONSES)
async def approve_proposal(issue_id: str, service: WorkflowService = Depends(get_workflow_service)):
    return IssueResponse.from_issue(await service.approve(issue_id))


@router.post("/{issue_id}/revise", response_model=IssueResponse, responses=ERROR_RESPONSES)
async def request_changes(
    issue_id: str,
    request: RevisionRequest,
    service: WorkflowService = Depends(get_workflow_service),
):
    return IssueResponse.from_issue(await service.request_changes(issue_id, request.feedback))


@router.post("/{issue_id}/reject", response_model=IssueResponse, responses=ERROR_RESPONSES)
async def reject_proposal(issue_id: str, service: WorkflowService = Depends(get_workflow_service)):
    return IssueResponse.from_issue(await service.reject(issue_id))


@router.post("/{issue_id}/reset", response_model=IssueResponse, responses=ERROR_RESPONSES)
async def reset_issue(issue_id: str, service: WorkflowService = Depends(get_workflow_service)):
    return IssueResponse.from_issue(await service.reset(issue_id))


# ==========================================================================
# Conversation
# ==========================================================================

@router.get(
    "/{issue_id}/conversation",
    response_model=List[ConversationMessageResponse],
    responses=ERROR_RESPONSES,
)
async def get_conversation(
    issue_id: str,
    phase: Optional[ConversationPhase] = Query(None),
    service: WorkflowService = Depends(get_workflow_service),
):
    messages = await service.get_conversation(issue_id, phase)
    return [ConversationMessageResponse.model_validate(m) for m in messages]


@router.get("/{issue_id}/proposal", response_model=ProposalResponse, responses=ERROR_RESPONSES)
async def get_proposal(issue_id: str, service: WorkflowService = Depends(get_workflow_service)):
    proposal = await service.get_proposal(issue_id)
    if proposal is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No proposal for issue {issue_id}",
        )
    return ProposalResponse.model_validate(proposal)


# ==========================================================================
# Streaming
# ==========================================================================

@router.websocket("/{issue_id}/stream")
async def stream_events(
    websocket: WebSocket,
    issue_id: str,
    service: WorkflowService = Depends(get_workflow_service),
):
    """
    WebSocket stream of the issue's live agent session.

    Message format:
    - {"type": "backfill", "session_id": ..., "events": [...]} first
    - {"type": "event", "event": {...}} for each live event
    - {"type": "end"} when the run finishes or no session is running
    """
    await websocket.accept()

    try:
        session_id = await service.stream_session_id(issue_id)
    except IssueNotFoundError as e:
        await websocket.close(code=WS_CLOSE_NOT_FOUND, reason=e.message)
        return

    subscription = service.event_buffer.subscribe(session_id) if session_id else None
    if subscription is None:
        await websocket.send_json({"type": "backfill", "session_id": session_id, "events": []})
        await websocket.send_json({"type": "end"})
        await websocket.close()
        return

    try:
        await websocket.send_json({
            "type": "backfill",
            "session_id": session_id,
            "events": [event.to_dict() for event in subscription.backfill],
        })
        if not subscription.completed:
            while True:
                event = await subscription.queue.get()
                if event is None:
                    break
                await websocket.send_json({"type": "event", "event": event.to_dict()})
        await websocket.send_json({"type": "end"})
        await websocket.close()
    except WebSocketDisconnect:
        pass
    finally:
        service.event_buffer.unsubscribe(session_id, subscription.queue)
