"""Provider webhook receivers.

Endpoints:
    POST /apps/github/          (GitHub App: push, pull_request, lifecycle events)
    POST /apps/ghe/             (GitHub Enterprise push)
    POST /apps/gitlab/          (GitLab Push Hook)
    POST /apps/bitbucket/       (Bitbucket Cloud repo:push)
    POST /apps/bitbucketserver/ (Bitbucket Server repo:refs_changed)

Providers retry deliveries that are not acknowledged, so once a delivery
is accepted every outcome is answered with 200; only authentication
failures get the provider's rejection status.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from prewarm.api.dependencies import get_services
from prewarm.db.session import get_db_session
from prewarm.errors import WebhookPayloadError
from prewarm.logging_config import get_logger
from prewarm.services.container import Services
from prewarm.webhooks.adapters import InboundWebhook
from prewarm.webhooks.github_app_events import handle_lifecycle_event, is_lifecycle_event

router = APIRouter(prefix="/apps", tags=["webhooks"])
logger = get_logger(__name__)


async def _inbound(request: Request) -> InboundWebhook:
    try:
        return InboundWebhook.from_parts(
            request.headers, request.query_params, await request.body()
        )
    except WebhookPayloadError as e:
        logger.warning("Rejecting webhook delivery", path=request.url.path, error=str(e))
        raise HTTPException(status_code=400, detail=str(e)) from e


async def _dispatch(services: Services, provider: str, inbound: InboundWebhook) -> Response:
    adapter = services.adapters[provider]
    try:
        result = await services.pipeline.handle(adapter, inbound)
    except Exception as e:
        logger.error("Webhook processing failed", provider=provider, exc_info=e)
        return PlainTextResponse("Error processing webhook.", status_code=200)
    return PlainTextResponse(result.message, status_code=result.status_code)


@router.post("/github")
@router.post("/github/")
async def github_app_webhook(
    request: Request, services: Services = Depends(get_services)
) -> Response:
    """Receive GitHub App deliveries.

    Validates the app's HMAC signature, records installation lifecycle
    events and hands push and pull request events to the pipeline.
    """
    if services.app_client is None:
        raise HTTPException(status_code=404, detail="GitHub App not configured")

    inbound = await _inbound(request)
    signature = inbound.header("X-Hub-Signature-256") or ""
    if not services.app_client.validate_webhook_signature(inbound.body, signature):
        logger.warning("Invalid GitHub App webhook signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    event = inbound.header("X-GitHub-Event")
    if event == "ping":
        logger.info("GitHub App webhook ping received")
        return JSONResponse(content={"message": "pong"})

    if is_lifecycle_event(event, inbound.payload):
        try:
            async with get_db_session() as db:
                await handle_lifecycle_event(
                    db, event, inbound.payload, services.settings.github_app
                )
        except (KeyError, TypeError) as e:
            logger.error("Malformed GitHub App lifecycle event", github_event=event, error=str(e))
        return JSONResponse(content={"message": "accepted"})

    return await _dispatch(services, "github", inbound)


@router.post("/ghe")
@router.post("/ghe/")
async def github_enterprise_webhook(
    request: Request, services: Services = Depends(get_services)
) -> Response:
    return await _dispatch(services, "github_enterprise", await _inbound(request))


@router.post("/gitlab")
@router.post("/gitlab/")
async def gitlab_webhook(request: Request, services: Services = Depends(get_services)) -> Response:
    return await _dispatch(services, "gitlab", await _inbound(request))


@router.post("/bitbucket")
@router.post("/bitbucket/")
async def bitbucket_webhook(
    request: Request, services: Services = Depends(get_services)
) -> Response:
    return await _dispatch(services, "bitbucket", await _inbound(request))


@router.post("/bitbucketserver")
@router.post("/bitbucketserver/")
async def bitbucket_server_webhook(
    request: Request, services: Services = Depends(get_services)
) -> Response:
    return await _dispatch(services, "bitbucket_server", await _inbound(request))
