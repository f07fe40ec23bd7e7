import enum
import typing as t
from collections.abc import Mapping
from dataclasses import dataclass, field

import orjson

from .base import LogLine
from .utils import format_date, utcnow


type JSON = dict[str, t.Any]

MESSAGE_KEYS = ("msg", "message", "Message")
SEVERITY_KEYS = ("level", "severity", "levelname")
SERVICE_NAME_LABELS = ("app.kubernetes.io/name", "app", "k8s-app")


class Severity(enum.StrEnum):
    UNDEFINED = ""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    FATAL = "FATAL"

    @classmethod
    def parse(cls, value: str) -> "Severity":
        value = value.upper()
        if value == "WARNING":
            return cls.WARN
        if value == "CRITICAL":
            return cls.FATAL
        try:
            return cls(value)
        except ValueError:
            return cls.UNDEFINED


@dataclass(frozen=True)
class PlainText:
    text: str


@dataclass(frozen=True)
class Structured:
    message: str
    severity: str = ""
    fields: Mapping[str, t.Any] = field(default_factory=dict)


type ParsedPayload = PlainText | Structured


def _pop_string(payload: JSON, keys: t.Sequence[str]) -> str:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str):
            del payload[key]
            return value
    return ""


def parse_payload(body: str) -> ParsedPayload:
    """Recognize JSON object log lines and extract well-known fields.

    Anything that is not a JSON object is plain text.
    """
    body = body.strip()
    if not body.startswith("{"):
        return PlainText(body)
    try:
        payload = orjson.loads(body)
    except orjson.JSONDecodeError:
        return PlainText(body)
    if not isinstance(payload, dict):
        return PlainText(body)
    message = _pop_string(payload, MESSAGE_KEYS)
    severity = _pop_string(payload, SEVERITY_KEYS).upper()
    return Structured(message=message or body, severity=severity, fields=payload)


def derive_service_name(labels: Mapping[str, str], pod_name: str) -> str:
    for label in SERVICE_NAME_LABELS:
        if value := labels.get(label):
            return value
    return pod_name


def _attribute_value(value: t.Any) -> t.Any:
    if isinstance(value, str | bool | int | float):
        return value
    if isinstance(value, dict | list):
        return orjson.dumps(value).decode()
    return ""


def build_export_record(line: LogLine) -> JSON:
    target = line.target
    attributes: JSON = {
        "service.name": derive_service_name(target.labels, target.pod_name)
    }
    if target.node_name:
        attributes["host.name"] = target.node_name
    if target.namespace:
        attributes["k8s.namespace.name"] = target.namespace
    if target.pod_name:
        attributes["k8s.pod.name"] = target.pod_name
    if target.container_name:
        attributes["k8s.container.name"] = target.container_name
    if target.node_name:
        attributes["k8s.node.name"] = target.node_name
    for key, value in target.labels.items():
        attributes[f"k8s.pod.label.{key}"] = value
    for key, value in target.annotations.items():
        attributes[f"k8s.pod.annotation.{key}"] = value

    record: JSON = {
        "timestamp": format_date(line.time or utcnow()),
        "observed_timestamp": format_date(utcnow()),
    }
    match parse_payload(line.content):
        case Structured(message=message, severity=severity, fields=fields):
            record["body"] = message
            if severity:
                record["severity_text"] = severity
                record["severity"] = Severity.parse(severity).value
            for key, value in fields.items():
                attributes[key] = _attribute_value(value)
        case PlainText(text=text):
            record["body"] = text
    record["attributes"] = attributes
    return record
