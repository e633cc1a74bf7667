"""Repository URL helpers shared by all providers."""

from urllib.parse import urlparse


def trim_clone_url(url: str) -> str:
    """Strip a trailing slash and a .git suffix, for comparisons only."""
    url = url.strip().rstrip("/")
    return url.removesuffix(".git")


def host_of(url: str) -> str:
    """Host of an http(s) or scp-style git URL, lower-cased. Empty if unparseable."""
    url = url.strip()
    if url.startswith("git@"):
        return url[len("git@") :].split(":", 1)[0].lower()
    return (urlparse(url).hostname or "").lower()


def parse_repo_url(repo_url: str) -> tuple[str, str, str] | None:
    """Parse a clone or web URL into (host, owner, repo).

    Supports:
      - https://github.com/owner/repo[.git]
      - https://gitlab.com/group/subgroup/repo[.git]  (owner = "group/subgroup")
      - git@github.com:owner/repo.git

    Returns None if the URL can't be parsed.
    """
    url = repo_url.strip()

    if url.startswith("git@"):
        try:
            host, path = url[len("git@") :].split(":", 1)
        except ValueError:
            return None
    else:
        parsed = urlparse(url)
        if not parsed.hostname:
            return None
        host, path = parsed.hostname, parsed.path

    segments = [s for s in trim_clone_url(path).split("/") if s]
    if len(segments) < 2:
        return None
    return host.lower(), "/".join(segments[:-1]), segments[-1]
