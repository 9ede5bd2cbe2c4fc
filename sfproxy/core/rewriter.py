from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from sfproxy.config import MIRROR_HOST


@dataclass(frozen=True)
class ProxyTarget:
    project_name: str
    file_path: str
    mirror_host: str = MIRROR_HOST

    @property
    def url(self) -> str:
        return f"https://{self.mirror_host}/project/{self.project_name}/{self.file_path}?viasf=1"

    @property
    def filename(self) -> str:
        return filename_from_url(self.url)


def filename_from_url(url: str) -> str:
    """Last path segment of ``url``, or an empty string when there is none."""
    try:
        path = urlsplit(url).path
    except ValueError:
        return ""
    return path.rsplit("/", 1)[-1]


def parse_download_path(path: str, mirror_host: str = MIRROR_HOST) -> Optional[ProxyTarget]:
    """
    Map ``/projects/<project>/files/<path...>/download`` onto a mirror target.

    ``path`` is taken as sent, percent-encoding intact, and segments are copied
    into the mirror URL verbatim. Returns None for any other shape.
    """
    if not path or not path.endswith("/download"):
        return None

    parts = path.split("/")
    try:
        project_index = parts.index("projects")
        files_index = parts.index("files")
    except ValueError:
        return None
    if files_index <= project_index:
        return None

    project_name = parts[project_index + 1]
    # Everything between "files" and the trailing "download"
    file_path = "/".join(parts[files_index + 1:-1])
    if not project_name or project_index + 1 >= files_index or not file_path:
        return None
    return ProxyTarget(project_name=project_name, file_path=file_path, mirror_host=mirror_host)

