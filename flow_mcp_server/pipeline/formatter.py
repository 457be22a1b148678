"""
Output formatter.

Renders the final content of a workflow as html, markdown, json and plain
text. Renderers are pure functions of the content and the options.
"""

import html
import json
import logging
import re
from typing import Any, Callable, Dict, List, Mapping, Optional

from flow_mcp_server.utils.errors import WorkflowValidationError

logger = logging.getLogger(__name__)

GENERATOR_NAME = "Alchemist Flow"
DEFAULT_TITLE = "Generated Content"
DEFAULT_FORMAT = "html"


class RenderedArtifact:
    """One rendering of the content."""

    def __init__(self, format: str, content: str, filename: str):
        self.format = format
        self.content = content
        self.filename = filename
        self.size_bytes = len(content.encode("utf-8"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": self.format,
            "content": self.content,
            "filename": self.filename,
            "size_bytes": self.size_bytes,
        }


def _title(content: Mapping[str, Any]) -> str:
    return str(content.get("title") or DEFAULT_TITLE)


def _body(content: Mapping[str, Any]) -> str:
    return str(content.get("content") or "")


def render_html(content: Mapping[str, Any], options: Mapping[str, Any]) -> str:
    title = html.escape(_title(content))
    body = html.escape(_body(content)).replace("\n", "<br>")
    footer = (
        f"\n  <hr><small>Generated by {GENERATOR_NAME}</small>"
        if options.get("include_metadata")
        else ""
    )
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        "<head>\n"
        '  <meta charset="UTF-8">\n'
        f"  <title>{title}</title>\n"
        "</head>\n"
        "<body>\n"
        f"  <h1>{title}</h1>\n"
        f"  {body}{footer}\n"
        "</body>\n"
        "</html>"
    )


def render_markdown(content: Mapping[str, Any], options: Mapping[str, Any]) -> str:
    text = f"# {_title(content)}\n\n{_body(content)}\n"
    if options.get("include_metadata"):
        text += f"\n---\n*Generated by {GENERATOR_NAME}*\n"
    return text


def render_json(content: Mapping[str, Any], options: Mapping[str, Any]) -> str:
    document: Dict[str, Any] = {
        "title": content.get("title"),
        "content": content.get("content"),
    }
    if options.get("include_metadata"):
        metadata: Dict[str, Any] = {
            "generated_by": GENERATOR_NAME,
            "customer_context": options.get("customer_context"),
        }
        if options.get("generated_at"):
            metadata["generated_at"] = options["generated_at"]
        document["metadata"] = metadata
    return json.dumps(document, indent=2, default=str)


def render_text(content: Mapping[str, Any], options: Mapping[str, Any]) -> str:
    text = f"{_title(content)}\n\n{_body(content)}\n"
    if options.get("include_metadata"):
        text += f"\nGenerated by {GENERATOR_NAME}\n"
    return text


RENDERERS: Dict[str, Callable[[Mapping[str, Any], Mapping[str, Any]], str]] = {
    "html": render_html,
    "markdown": render_markdown,
    "json": render_json,
    "txt": render_text,
}

FILE_EXTENSIONS = {"html": "html", "markdown": "md", "json": "json", "txt": "txt"}


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug[:60].rstrip("-") or "content"


def make_filename(format: str, content: Mapping[str, Any], options: Mapping[str, Any]) -> str:
    stem = options.get("filename_stem") or slugify(_title(content))
    return f"{stem}.{FILE_EXTENSIONS[format]}"


def render(format: str, content: Mapping[str, Any], options: Optional[Mapping[str, Any]] = None) -> RenderedArtifact:
    """
    Render content in a single format.

    Raises:
        WorkflowValidationError: If the format is not supported
    """
    options = options or {}
    renderer = RENDERERS.get(format)
    if renderer is None:
        raise WorkflowValidationError(
            f"Unsupported output format '{format}'. Supported: {', '.join(RENDERERS)}"
        )
    return RenderedArtifact(format, renderer(content, options), make_filename(format, content, options))


def render_all(content: Mapping[str, Any], options: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """
    Render content in every supported format.

    Args:
        content: {"title": ..., "content": ...}
        options: format, include_metadata, customer_context, filename_stem

    Returns:
        {"primary": artifact dict, "alternatives": [artifact dict, ...]}
    """
    options = options or {}
    primary_format = options.get("format") or DEFAULT_FORMAT
    primary = render(primary_format, content, options)

    alternatives: List[Dict[str, Any]] = [
        render(fmt, content, options).to_dict()
        for fmt in RENDERERS
        if fmt != primary_format
    ]
    logger.debug(f"Rendered content as {primary_format} plus {len(alternatives)} alternatives")

    return {"primary": primary.to_dict(), "alternatives": alternatives}
