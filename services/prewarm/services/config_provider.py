"""Repository workspace configuration.

The configuration file is read from the repository at the prebuild's
revision through the host's context parser. `.prewarm.yml` wins over the
legacy `.gitpod.yml`. A repository without either file gets an empty
default config, which never prebuilds.
"""

from dataclasses import dataclass, field
from typing import Any

import yaml
from sqlalchemy.ext.asyncio import AsyncSession

from prewarm.db.models import User
from prewarm.logging_config import get_logger
from prewarm.services.vcs_provider import CommitContext, ContextParser

logger = get_logger(__name__)

CONFIG_FILE_NAMES = (".prewarm.yml", ".gitpod.yml")

# Provider sections that may carry a `prebuilds` policy block
PROVIDER_SECTIONS = ("github", "gitlab", "bitbucket", "bitbucket_server")


@dataclass
class TaskConfig:
    name: str | None = None
    before: str | None = None
    init: str | None = None
    prebuild: str | None = None
    command: str | None = None


@dataclass
class WorkspaceConfig:
    tasks: list[TaskConfig] = field(default_factory=list)
    # provider section name -> prebuilds policy block as written in the file
    prebuilds: dict[str, dict[str, Any]] = field(default_factory=dict)
    image: str | None = None
    # "repo" when read from the repository, "default" otherwise
    origin: str = "default"
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {**self.raw, "_origin": self.origin}


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def parse_workspace_config(content: str) -> WorkspaceConfig:
    """Parse configuration file content. Malformed YAML raises yaml.YAMLError."""
    data = yaml.safe_load(content) or {}
    if not isinstance(data, dict):
        raise yaml.YAMLError("Workspace configuration must be a mapping")
    return workspace_config_from_dict(data)


def workspace_config_from_dict(data: dict[str, Any]) -> WorkspaceConfig:
    """Build a WorkspaceConfig from a parsed file or a stored to_dict() copy."""
    data = dict(data)
    origin = data.pop("_origin", "repo")

    tasks = []
    for entry in data.get("tasks") or []:
        if not isinstance(entry, dict):
            continue
        tasks.append(
            TaskConfig(
                name=_str_or_none(entry.get("name")),
                before=_str_or_none(entry.get("before")),
                init=_str_or_none(entry.get("init")),
                prebuild=_str_or_none(entry.get("prebuild")),
                command=_str_or_none(entry.get("command")),
            )
        )

    prebuilds = {}
    for section in PROVIDER_SECTIONS:
        section_data = data.get(section)
        block = section_data.get("prebuilds") if isinstance(section_data, dict) else None
        if isinstance(block, dict):
            prebuilds[section] = block

    image = data.get("image")
    return WorkspaceConfig(
        tasks=tasks,
        prebuilds=prebuilds,
        image=image if isinstance(image, str) else None,
        origin=str(origin),
        raw=data,
    )


class ConfigProvider:
    async def fetch_config(
        self, db: AsyncSession, user: User, parser: ContextParser, context: CommitContext
    ) -> WorkspaceConfig:
        for file_name in CONFIG_FILE_NAMES:
            content = await parser.fetch_file(db, user, context, file_name)
            if content is None:
                continue
            try:
                config = parse_workspace_config(content)
            except yaml.YAMLError as e:
                logger.warning(
                    "Invalid workspace configuration",
                    file=file_name,
                    clone_url=context.repository.clone_url,
                    commit=context.revision,
                    error=str(e),
                )
                return WorkspaceConfig()
            logger.debug(
                "Workspace configuration loaded",
                file=file_name,
                clone_url=context.repository.clone_url,
                tasks=len(config.tasks),
            )
            return config
        return WorkspaceConfig()
