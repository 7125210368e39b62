"""
Build-time settings for the embeddable widget.
"""
import html
import os
from dataclasses import dataclass

from ..config import DEFAULT_APP_URL
from ..core.models import is_valid_widget_id

# Filenames the widget recognizes when scanning for its own <script> tag.
SCRIPT_FILENAMES = ("widget.js", "widget-src.js")


@dataclass(frozen=True)
class WidgetBuild:
    """Constants baked into a widget build.

    ``api_base`` is where every copy of the widget sends its traffic unless
    it is served from the embedding page's own origin.
    """

    api_base: str = DEFAULT_APP_URL
    script_name: str = "widget.js"

    def __post_init__(self):
        object.__setattr__(self, "api_base", self.api_base.rstrip("/"))

    @classmethod
    def from_env(cls) -> "WidgetBuild":
        return cls(api_base=os.environ.get("MAPMYVISITORS_APP_URL") or DEFAULT_APP_URL)

    @property
    def script_url(self) -> str:
        return f"{self.api_base}/{self.script_name}"

    def embed_snippet(self, widget_id: str) -> str:
        """The <script> tag a site owner pastes into their page."""
        if not is_valid_widget_id(widget_id):
            raise ValueError(f"Invalid widget ID: {widget_id!r}")
        src = html.escape(f"{self.script_url}?id={widget_id}", quote=True)
        return f'<script src="{src}" async></script>'
