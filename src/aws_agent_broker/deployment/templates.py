"""Loading, inspecting and uploading CloudFormation templates."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml

from aws_agent_broker.errors import TemplateValidationError

logger = logging.getLogger(__name__)

TemplateFormat = Literal["json", "yaml"]

# CreateStack/UpdateStack reject inline TemplateBody above this size.
MAX_TEMPLATE_BODY_BYTES = 51_200

_REMOTE_PREFIXES = ("https://", "http://", "s3://")


class CloudFormationLoader(yaml.SafeLoader):
    """SafeLoader that understands short-form intrinsics such as ``!Ref``."""


def _construct_intrinsic(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> dict[str, Any]:
    value: Any
    if isinstance(node, yaml.ScalarNode):
        value = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)
    if tag_suffix == "GetAtt" and isinstance(value, str):
        value = value.split(".", 1)
    key = tag_suffix if tag_suffix in ("Ref", "Condition") else f"Fn::{tag_suffix}"
    return {key: value}


CloudFormationLoader.add_multi_constructor("!", _construct_intrinsic)


@dataclass(frozen=True)
class LoadedTemplate:
    path: str
    body: str
    format: TemplateFormat
    document: dict[str, Any] = field(repr=False)

    @property
    def size_bytes(self) -> int:
        return len(self.body.encode("utf-8"))

    @property
    def parameters(self) -> dict[str, Any]:
        params = self.document.get("Parameters") or {}
        return params if isinstance(params, dict) else {}

    @property
    def resources(self) -> dict[str, Any]:
        resources = self.document.get("Resources") or {}
        return resources if isinstance(resources, dict) else {}

    def required_parameters(self) -> list[str]:
        """Declared parameters that have no ``Default``."""
        return [
            name
            for name, spec in self.parameters.items()
            if not (isinstance(spec, dict) and "Default" in spec)
        ]

    def looks_like_cloudformation(self) -> bool:
        return "AWSTemplateFormatVersion" in self.document or "Resources" in self.document

    def has_iam_resources(self) -> bool:
        return any(
            isinstance(resource, dict) and str(resource.get("Type", "")).startswith("AWS::IAM::")
            for resource in self.resources.values()
        )


def is_local(template_path: str) -> bool:
    return not template_path.startswith(_REMOTE_PREFIXES)


def parse_template(body: str, path: str = "<template>") -> LoadedTemplate:
    """Parse JSON, falling back to YAML with CloudFormation tags.

    Raises:
        TemplateValidationError: If neither parser yields a mapping.
    """
    stripped = body.lstrip()
    document: Any
    fmt: TemplateFormat
    if stripped.startswith("{"):
        try:
            document = json.loads(body)
        except json.JSONDecodeError as exc:
            raise TemplateValidationError(f"Invalid JSON template {path}: {exc}") from exc
        fmt = "json"
    else:
        try:
            document = yaml.load(body, Loader=CloudFormationLoader)
        except yaml.YAMLError as exc:
            raise TemplateValidationError(f"Invalid YAML template {path}: {exc}") from exc
        fmt = "yaml"
    if not isinstance(document, dict):
        raise TemplateValidationError(f"Template {path} is not a mapping")
    return LoadedTemplate(path=path, body=body, format=fmt, document=document)


def load_template(template_path: str) -> LoadedTemplate:
    """Read and parse a local template file.

    Raises:
        TemplateValidationError: If the file is missing, unreadable or unparsable.
    """
    path = Path(template_path)
    if not path.is_file():
        raise TemplateValidationError(f"Template file not found: {template_path}", "template_not_found")
    try:
        body = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise TemplateValidationError(f"Cannot read template {template_path}: {exc}") from exc
    return parse_template(body, template_path)


def template_key(stack_name: str, prefix: str | None, fmt: TemplateFormat) -> str:
    extension = "json" if fmt == "json" else "yaml"
    base = (prefix or "templates").strip("/")
    return f"{base}/{stack_name}-{int(time.time() * 1000)}.{extension}"


def upload_template(
    s3_client: Any,
    template: LoadedTemplate,
    *,
    bucket: str,
    stack_name: str,
    key_prefix: str | None = None,
) -> str:
    """Put the template body in S3 and return its virtual-hosted URL."""
    key = template_key(stack_name, key_prefix, template.format)
    s3_client.put_object(
        Bucket=bucket,
        Key=key,
        Body=template.body.encode("utf-8"),
        ContentType="application/json" if template.format == "json" else "application/x-yaml",
    )
    logger.info("Uploaded template for %s to s3://%s/%s", stack_name, bucket, key)
    return f"https://{bucket}.s3.amazonaws.com/{key}"
