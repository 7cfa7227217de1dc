"""
Template Loader

Loads the file templates snapkg writes into snapshots, such as the default
profile manifest, from several locations.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, StrictUndefined, TemplateError, TemplateNotFound

from common.exceptions import TemplateNotFoundError, TemplateRenderError

logger = logging.getLogger(__name__)


class TemplateLoader:
    """
    Loads templates with local overrides taking precedence.

    Search order:
    1. Admin overrides (/etc/snapkg/templates)
    2. System templates (/usr/share/snapkg/templates)
    3. Templates shipped with the package
    """

    TEMPLATE_PATHS = [
        Path("/etc/snapkg/templates"),
        Path("/usr/share/snapkg/templates"),
        Path(__file__).parent,
    ]

    def __init__(self, additional_paths: Optional[List[Path]] = None):
        self._paths = list(additional_paths or []) + list(self.TEMPLATE_PATHS)
        self._env = self._create_environment()

    def _create_environment(self) -> Environment:
        loaders = []
        for path in self._paths:
            if path.is_dir():
                loaders.append(FileSystemLoader(str(path)))
                logger.debug(f"Added template path: {path}")

        return Environment(
            loader=ChoiceLoader(loaders),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            undefined=StrictUndefined,
        )

    def render(self, name: str, **variables) -> str:
        """
        Render a template with variables.

        Raises:
            TemplateNotFoundError: no search path holds ``name``
            TemplateRenderError: the template failed to render
        """
        try:
            template = self._env.get_template(name)
        except TemplateNotFound:
            raise TemplateNotFoundError(name) from None

        try:
            return template.render(**variables)
        except TemplateError as e:
            raise TemplateRenderError(name, str(e)) from e

    def template_exists(self, name: str) -> bool:
        try:
            self._env.get_template(name)
        except TemplateNotFound:
            return False
        return True


_loader: Optional[TemplateLoader] = None


def get_template_loader() -> TemplateLoader:
    """Get the shared template loader."""
    global _loader
    if _loader is None:
        _loader = TemplateLoader()
    return _loader
