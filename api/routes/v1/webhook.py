"""
api/routes/v1/webhook.py -- Webhook routes called by CI pipelines.

Routes:
  GET  /webhook/health            -- liveness, no auth
  POST /webhook/create-container  -- provision a container (blocks until running)
  POST /webhook/get-access        -- credentials for a running container
  GET  /webhook/containers        -- every known container, newest first

Every route except /health requires the X-Webhook-Secret header (see
auth/dependencies.py). Handlers are plain `def`, not `async def`: creation
blocks for minutes while the hypervisor task and start polls run, and
FastAPI runs sync handlers in its thread pool so concurrent creations do not
block each other or the event loop.

Domain errors (NotFoundError, NotReadyError, ProvisioningError, ...) are not
caught here; api/main.py maps them to HTTP responses in one place.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter, webhook_rate_limit
from api.models import (
    AccessDetail,
    AccessResponse,
    ContainerListResponse,
    ContainerListRow,
    ContainerSummary,
    CreateContainerRequest,
    CreateContainerResponse,
    GetAccessRequest,
    WebhookHealthResponse,
)
from auth.dependencies import require_webhook_secret
from provisioning.orchestrator import ProvisioningOrchestrator

logger = logging.getLogger("cardinal.api.webhook")

router = APIRouter(prefix="/webhook")

# Protected routes share one router so the secret check cannot be forgotten
# on a newly added handler.
protected = APIRouter(dependencies=[Depends(require_webhook_secret)])


def _orchestrator(request: Request) -> ProvisioningOrchestrator:
    return request.app.state.orchestrator


# ---------------------------------------------------------------------------
# GET /webhook/health -- no auth, no rate limit
# ---------------------------------------------------------------------------


@router.get("/health", response_model=WebhookHealthResponse)
def webhook_health() -> WebhookHealthResponse:
    """Return webhook liveness for CI pre-flight checks."""
    return WebhookHealthResponse(timestamp=datetime.now(timezone.utc).isoformat())


# ---------------------------------------------------------------------------
# POST /webhook/create-container
# ---------------------------------------------------------------------------


@limiter.limit(webhook_rate_limit)
@protected.post("/create-container", response_model=CreateContainerResponse, status_code=201)
def create_container(request: Request, body: CreateContainerRequest) -> CreateContainerResponse:
    """Provision a container and return as soon as it is recorded.

    The response status is always "creating": the address is resolved in
    the background and get-access succeeds once it is known.
    """
    logger.info(
        "Webhook: create container request name=%s hostname=%s jenkins_job_id=%s",
        body.name,
        body.hostname,
        body.jenkins_job_id,
    )
    result = _orchestrator(request).create_container(body.to_domain())
    return CreateContainerResponse(container=ContainerSummary.from_result(result))


# ---------------------------------------------------------------------------
# POST /webhook/get-access
# ---------------------------------------------------------------------------


@limiter.limit(webhook_rate_limit)
@protected.post("/get-access", response_model=AccessResponse)
def get_access(request: Request, body: GetAccessRequest) -> AccessResponse:
    """Return address, username and password for a running container."""
    logger.info("Webhook: get container access request ct_id=%s", body.ct_id)
    bundle = _orchestrator(request).get_access(body.ct_id)
    return AccessResponse(access=AccessDetail.from_bundle(bundle))


# ---------------------------------------------------------------------------
# GET /webhook/containers
# ---------------------------------------------------------------------------


@limiter.limit(webhook_rate_limit)
@protected.get("/containers", response_model=ContainerListResponse)
def list_containers(request: Request) -> ContainerListResponse:
    """Return all containers, newest first. Passwords are not included."""
    logger.info("Webhook: list containers request")
    records = _orchestrator(request).list_containers()
    return ContainerListResponse(containers=[ContainerListRow.from_record(r) for r in records])


router.include_router(protected)
