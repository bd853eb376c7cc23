"""References to media stored on a homeserver."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from urllib.parse import quote, unquote, urlencode, urlsplit, urlunsplit

_PATH_SAFE = "/:@!$&'()*+,;="


class IllegalContentScheme(ValueError):
    """Raised when a content URL does not use the ``mxc`` scheme."""

    def __init__(self) -> None:
        super().__init__('content URLs had scheme other than "mxc"')


def _encode(component: str) -> str:
    return quote(component, safe="")


@dataclass(frozen=True)
class Content:
    """A piece of media identified by its origin server and media id."""

    host: str
    id: str

    @classmethod
    def from_url(cls, url: str) -> Content:
        """Parse an ``mxc://host/id`` URL."""
        parts = urlsplit(url)
        if parts.scheme != "mxc":
            raise IllegalContentScheme()
        host = unquote(parts.hostname or "")
        return cls(host, unquote(parts.path)[1:])

    def url(self) -> str:
        """The ``mxc`` URL of this content."""
        return f"mxc://{self.host}/{_encode(self.id)}"

    def url_on(self, homeserver: str) -> str:
        """The HTTP download URL of this content on ``homeserver``."""
        parts = urlsplit(homeserver)
        path = f"/_matrix/media/r0/download/{_encode(self.host)}/{_encode(self.id)}"
        return urlunsplit(parts._replace(path=path))


class ThumbnailMethod(enum.Enum):
    """How a thumbnail is fitted to its requested size."""

    CROP = "crop"
    SCALE = "scale"


@dataclass(frozen=True)
class Thumbnail:
    """A request for a thumbnail of some content at a given size."""

    content: Content
    size: tuple[int, int]
    method: ThumbnailMethod

    def url_on(self, homeserver: str) -> str:
        """The HTTP thumbnail URL on ``homeserver``."""
        width, height = self.size
        query = urlencode([("width", width), ("height", height), ("method", self.method.value)])
        path = "/_matrix/media/r0/thumbnail/{}/{}".format(
            quote(self.content.host, safe=_PATH_SAFE), quote(self.content.id, safe=_PATH_SAFE)
        )
        parts = urlsplit(homeserver)
        return urlunsplit(parts._replace(path=path, query=query))