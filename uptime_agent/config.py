"""Check configuration: YAML file -> validated, frozen check definitions."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Annotated, Any, Literal, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from uptime_agent.errors import ConfigValidationError


# Value of a json path that does not resolve; distinct from an explicit null.
MISSING: Any = object()


def coerce_str(value: Any) -> str:
    # Matches how the config authors write `equals:` values ("true", "1", "null").
    if value is MISSING:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class StatusCodeRule(_Frozen):
    type: Literal["status_code"]
    expected: list[int] = Field(default_factory=list)


class JsonRule(_Frozen):
    type: Literal["json"]
    path: str = ""
    equals: str | None = None
    exists: bool | None = None
    capture_as: str | None = Field(default=None, alias="captureAs")

    @field_validator("equals", mode="before")
    @classmethod
    def _equals_as_text(cls, v: Any) -> Any:
        # YAML hands over `equals: 200` / `equals: true` as int / bool.
        if v is None or isinstance(v, str):
            return v
        return coerce_str(v)

    @property
    def asserts(self) -> bool:
        return bool(self.exists) or self.equals is not None


ExpectationRule = Annotated[Union[StatusCodeRule, JsonRule], Field(discriminator="type")]


class _CheckBase(_Frozen):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    instance_id: str = ""
    severity: Literal["critical", "optional"] = "critical"
    enabled: bool = True
    interval_seconds: int = Field(60, alias="intervalSeconds")
    timeout_ms: int = Field(5000, alias="timeoutMs")

    @property
    def check_key(self) -> str:
        return f"{self.instance_id}:{self.id}" if self.instance_id else self.id


class HttpCheck(_CheckBase):
    type: Literal["http"]
    url: str | None = None
    method: Literal["GET", "POST"] = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: str | None = None
    expect: list[ExpectationRule] = Field(default_factory=list)


class WssCheck(_CheckBase):
    type: Literal["wss"]
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)


class JourneyCheck(_CheckBase):
    type: Literal["journey"]
    url: str | None = None
    timeout_ms: int = Field(60_000, alias="timeoutMs")
    mode: Literal["basic", "advanced"] | None = None


class RoomEchoCheck(_CheckBase):
    type: Literal["protocol_room_echo"]
    url: str | None = None
    timeout_ms: int = Field(30_000, alias="timeoutMs")


CheckDefinition = Annotated[
    Union[HttpCheck, WssCheck, JourneyCheck, RoomEchoCheck],
    Field(discriminator="type"),
]

_URL_OPTIONAL_TYPES = {"journey", "protocol_room_echo"}


class InstanceConfig(_Frozen):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    enabled: bool = True
    tags: list[str] = Field(default_factory=list)
    checks: list[CheckDefinition] = Field(default_factory=list)


class UptimeConfig(_Frozen):
    instances: list[InstanceConfig] = Field(default_factory=list)

    def iter_checks(self, *, include_disabled: bool = False):
        for inst in self.instances:
            for chk in inst.checks:
                if not include_disabled and (not inst.enabled or not chk.enabled):
                    continue
                yield inst, chk

    def find_check(self, check_key: str):
        for _inst, chk in self.iter_checks(include_disabled=True):
            if chk.check_key == check_key:
                return chk
        return None


def _validate_raw(doc: Any, source: str) -> dict[str, Any]:
    if not isinstance(doc, dict):
        raise ConfigValidationError(f"Invalid config YAML: {source}")
    instances = doc.get("instances")
    if not isinstance(instances, list):
        raise ConfigValidationError("Config must have 'instances: []' at root")

    out_instances: list[dict[str, Any]] = []
    for inst in instances:
        if not isinstance(inst, dict) or not inst.get("id") or not inst.get("name"):
            raise ConfigValidationError("Each instance must have id + name")
        inst_id = str(inst["id"])
        checks = inst.get("checks")
        if not isinstance(checks, list):
            raise ConfigValidationError(f"Instance {inst_id} must have checks[]")
        out_checks: list[dict[str, Any]] = []
        for chk in checks:
            if not isinstance(chk, dict) or not chk.get("id") or not chk.get("name") or not chk.get("type"):
                raise ConfigValidationError(f"Check is missing required fields (id,name,type) in instance {inst_id}")
            severity = chk.get("severity")
            if severity is not None and severity not in {"critical", "optional"}:
                raise ConfigValidationError(f"Check {inst_id}:{chk['id']} has invalid severity: {severity}")
            if chk.get("enabled") is not False and chk["type"] not in _URL_OPTIONAL_TYPES and not chk.get("url"):
                raise ConfigValidationError(
                    f"Check is missing url (required for type={chk['type']}) in instance {inst_id}"
                )
            out_checks.append({**chk, "instance_id": inst_id})
        out_instances.append({**inst, "checks": out_checks})
    return {"instances": out_instances}


def parse_config(doc: Any, *, source: str = "<memory>") -> UptimeConfig:
    raw = _validate_raw(doc, source)
    try:
        return UptimeConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigValidationError(f"Invalid config {source}: {exc}") from exc


def load_config_from_file(path: str | os.PathLike[str]) -> UptimeConfig:
    p = Path(path)
    if not p.is_absolute():
        p = Path.cwd() / p
    with open(p, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f)
    return parse_config(doc, source=str(path))
