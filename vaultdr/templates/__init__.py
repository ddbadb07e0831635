"""Jinja2 templates for manifests, system info and notifications."""

import os

from jinja2 import Environment, FileSystemLoader, StrictUndefined

TEMPLATES_DIR = os.path.dirname(os.path.abspath(__file__))


def template_environment() -> Environment:
    """Create the Jinja2 environment used for all text artifacts."""
    return Environment(
        loader=FileSystemLoader(TEMPLATES_DIR),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )


def render_template(name: str, **context) -> str:
    return template_environment().get_template(name).render(**context)
