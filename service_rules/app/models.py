"""
Row and result models for the rules persistence service.
"""

from typing import Any, Dict, Mapping, Optional, Tuple, Type, TypeVar, Union
from dataclasses import dataclass
from datetime import date, datetime, time

from pydantic import BaseModel, ConfigDict, field_validator


R = TypeVar("R", bound="Row")


class Row(BaseModel):
    """A closed, fixed-shape row for one projection table."""

    model_config = ConfigDict(frozen=True, extra="forbid", coerce_numbers_to_str=True)

    @field_validator("*", mode="before")
    @classmethod
    def stringify_cells(cls, value: Any) -> Any:
        # Column store cells are strings; numbers are handled by the config
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (datetime, date, time)):
            return value.isoformat()
        return value

    @classmethod
    def coerce(cls: Type[R], value: Union["Row", Mapping[str, Any]]) -> R:
        """Accept either an instance or a plain mapping of its fields."""
        if isinstance(value, cls):
            return value
        return cls.model_validate(dict(value))

    @classmethod
    def columns(cls) -> Tuple[str, ...]:
        return tuple(cls.model_fields)

    def values(self) -> Tuple[Any, ...]:
        return tuple(getattr(self, name) for name in self.columns())

    def as_row(self) -> Dict[str, Any]:
        return self.model_dump()


class Repository(Row):
    """One row of ``repositories``: a source repository of rules."""

    clone_url: str
    name: Optional[str] = None
    origin: Optional[str] = None
    branch: Optional[str] = None
    revision: Optional[str] = None


class Provenance(Row):
    """Where a stored rule or table came from."""

    ns: str
    name: str
    origin: str
    branch: str


class RuleMeta(Row):
    """One row of the ``rules`` projection table."""

    ns: str
    name: str
    origin: str
    branch: str
    rule_id: str
    version: Optional[str] = None
    runtime: Optional[str] = None
    criticality: Optional[str] = None


class WhenKey(Row):
    """One row of ``when_keys``: the section/key a rule's condition reads."""

    section: str
    key: str


class Applicable(Row):
    """One condition clause of a rule, stored in ``whens``."""

    section: str
    key: str
    op: str
    val: str
    rule_id: str

    def when_key(self) -> WhenKey:
        return WhenKey(section=self.section, key=self.key)


class Effective(Row):
    """One row of ``effective``: where and when a rule applies."""

    country: Optional[str] = None
    region: Optional[str] = None
    timezone: Optional[str] = None
    starts: Optional[str] = None
    ends: Optional[str] = None
    key: str
    rule_id: str


@dataclass(frozen=True)
class RuleBranch:
    """A stored instance of a rule on some origin/branch."""

    id: str
    origin: Optional[str]
    branch: Optional[str]


@dataclass
class PublishResult:
    """Which writes of a dual-store publish have completed."""

    public_id: Optional[str] = None
    content_stored: bool = False
    projections_stored: bool = False

    @property
    def complete(self) -> bool:
        return self.content_stored and self.projections_stored
