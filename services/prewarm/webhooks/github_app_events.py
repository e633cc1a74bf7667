"""GitHub App lifecycle deliveries: installations and repository renames."""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.config import GitHubAppConfig
from prewarm.db import queries
from prewarm.logging_config import get_logger

logger = get_logger(__name__)

LIFECYCLE_EVENTS = {
    ("installation", "created"),
    ("installation", "deleted"),
    ("repository", "renamed"),
}


def is_lifecycle_event(event: str | None, payload: dict[str, Any]) -> bool:
    return (event, payload.get("action")) in LIFECYCLE_EVENTS


async def handle_installation_created(
    db: AsyncSession, payload: dict[str, Any], config: GitHubAppConfig
) -> None:
    installation_id = str(payload["installation"]["id"])
    sender_id = str(payload["sender"]["id"])

    owner = await queries.find_user_by_identity(db, config.auth_provider_id, sender_id)
    await queries.record_installation(
        db,
        "github",
        installation_id,
        owner.id if owner else None,
        sender_id,
    )
    logger.info(
        "New installation",
        installation_id=installation_id,
        platform_user_id=sender_id,
        owner_user_id=str(owner.id) if owner else None,
    )


async def handle_installation_deleted(db: AsyncSession, payload: dict[str, Any]) -> None:
    installation_id = str(payload["installation"]["id"])
    await queries.record_uninstallation(db, "github", installation_id)
    logger.info("Installation deleted", installation_id=installation_id)


async def handle_repository_renamed(db: AsyncSession, payload: dict[str, Any]) -> None:
    """Point projects of the old clone URL at the renamed repository."""
    repository = payload["repository"]
    new_clone_url = repository["clone_url"]
    old_name = payload.get("changes", {}).get("repository", {}).get("name", {}).get("from")
    if not old_name:
        return
    old_clone_url = new_clone_url.replace(f"/{repository['name']}.git", f"/{old_name}.git")

    for project in await queries.find_projects_by_clone_url(db, old_clone_url):
        project.clone_url = new_clone_url
        if project.name == old_name:
            project.name = repository["name"]
        logger.info(
            "Project clone URL updated after repository rename",
            project_id=str(project.id),
            old_clone_url=old_clone_url,
            new_clone_url=new_clone_url,
        )
    await db.flush()


async def handle_lifecycle_event(
    db: AsyncSession, event: str, payload: dict[str, Any], config: GitHubAppConfig
) -> None:
    match (event, payload.get("action")):
        case ("installation", "created"):
            await handle_installation_created(db, payload, config)
        case ("installation", "deleted"):
            await handle_installation_deleted(db, payload)
        case ("repository", "renamed"):
            await handle_repository_renamed(db, payload)
