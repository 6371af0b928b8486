"""
harvester.config.schema

Pydantic models defining the declarative source document.

A source document describes one site:
- site identity and the base url used to resolve relative links
- browser and rate limit options
- an ordered workflow of navigate / wait / click / scroll / extract actions
- a mapping from extracted fields onto the canonical EventRecord
- validation rules and debug switches

Documents may be written in camelCase (``containerSelector``) or snake_case;
both populate the same models. Models are frozen: a loaded config is
immutable for the duration of a run.

Requires: pydantic>=2
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

DEFAULT_SCHEDULE = "0 */3 * * *"
DEFAULT_TRUST_SCORE = 80


class _DocModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


# ----------------------------
# Enums
# ----------------------------

class WaitCondition(str, Enum):
    visible = "visible"
    hidden = "hidden"
    networkidle = "networkidle"


class ScrollDirection(str, Enum):
    down = "down"
    up = "up"
    bottom = "bottom"


class IdStrategy(str, Enum):
    generated = "generated"
    extracted = "extracted"


# ----------------------------
# Sub-models
# ----------------------------

class SiteInfo(_DocModel):
    name: str = Field(..., min_length=1)
    base_url: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1, description="Unique source key, used as plugin name")
    description: str | None = None
    maintainer: str | None = None

    @field_validator("source")
    @classmethod
    def _validate_source(cls, v: str) -> str:
        v = v.strip()
        if " " in v:
            raise ValueError("site.source must not contain spaces")
        return v


class Viewport(_DocModel):
    width: int = Field(default=1280, ge=1)
    height: int = Field(default=720, ge=1)


class BrowserOptions(_DocModel):
    user_agent: str | None = None
    viewport: Viewport = Field(default_factory=Viewport)
    headless: bool = True
    timeout_ms: int = Field(default=30000, ge=0, alias="timeout")


class RateLimitOptions(_DocModel):
    delay_between_requests_ms: int = Field(default=1000, ge=0, alias="delayBetweenRequests")
    max_concurrent: int = Field(default=1, ge=1)
    respect_robots_txt: bool = True
    max_requests_per_min: int = Field(default=10, ge=1)


class FollowUp(_DocModel):
    """Secondary extraction on the page linked from ``url_field``."""

    url_field: str = Field(..., min_length=1)
    fields: dict[str, FieldSpec] = Field(default_factory=dict)


class FieldSpec(_DocModel):
    selector: str = Field(..., min_length=1)
    # text | innerHTML | any attribute name (href, src, data-*)
    attribute: str = "text"
    multiple: bool = False
    required: bool = True
    transform: str | None = None
    transform_params: dict[str, Any] = Field(default_factory=dict)
    fallback: str | None = None
    follow_up: FollowUp | None = None


# ----------------------------
# Workflow actions (tagged union on "type")
# ----------------------------

class NavigateAction(_DocModel):
    type: Literal["navigate"] = "navigate"
    url: str = Field(..., min_length=1)
    wait_for_load: bool = True


class WaitAction(_DocModel):
    type: Literal["wait"] = "wait"
    selector: str | None = None
    timeout_ms: int = Field(default=5000, ge=0, alias="timeout")
    condition: WaitCondition = WaitCondition.visible


class ClickAction(_DocModel):
    type: Literal["click"] = "click"
    selector: str = Field(..., min_length=1)
    wait_after_ms: int | None = Field(default=None, ge=0, alias="waitAfter")
    optional: bool = False


class ScrollAction(_DocModel):
    type: Literal["scroll"] = "scroll"
    direction: ScrollDirection = ScrollDirection.down
    amount: int | None = Field(default=None, ge=0)
    wait_after_ms: int | None = Field(default=None, ge=0, alias="waitAfter")


class ExtractAction(_DocModel):
    type: Literal["extract"] = "extract"
    container_selector: str = Field(..., min_length=1)
    fields: dict[str, FieldSpec] = Field(default_factory=dict)
    follow_up: FollowUp | None = None

    # Date-grouped listings: items following a heading matching
    # group_selector inherit its text under group_field.
    group_selector: str | None = None
    group_field: str = "dateGroup"

    @model_validator(mode="after")
    def _post_checks(self) -> ExtractAction:
        if not self.fields:
            raise ValueError("extract action needs at least one field")
        return self


WorkflowAction = Annotated[
    Union[NavigateAction, WaitAction, ClickAction, ScrollAction, ExtractAction],
    Field(discriminator="type"),
]


# ----------------------------
# Mapping onto EventRecord
# ----------------------------

class IdMapping(_DocModel):
    strategy: IdStrategy = IdStrategy.generated
    fields: list[str] = Field(default_factory=list)


class VenueMapping(_DocModel):
    """
    Each entry names an extracted field; a value that is not an extracted
    field name is used as a static literal (e.g. ``city: "Bristol"``).
    """

    name: str = Field(..., min_length=1)
    address: str | None = None
    city: str | None = None
    country: str | None = None


class DateFieldMapping(_DocModel):
    field: str = Field(..., min_length=1)
    transform: str | None = None
    # string values naming an extracted field are resolved per record
    transform_params: dict[str, Any] = Field(default_factory=dict)


DateRef = Union[str, DateFieldMapping]


class DateMapping(_DocModel):
    start: DateRef
    end: DateRef | None = None
    timezone: str | None = None


class UrlMapping(_DocModel):
    event: str | None = None
    tickets: str | None = None
    info: str | None = None


class MappingConfig(_DocModel):
    id: IdMapping = Field(default_factory=IdMapping)
    title: str = Field(..., min_length=1)
    artist: str | None = None
    venue: VenueMapping
    date: DateMapping
    urls: UrlMapping = Field(default_factory=UrlMapping)
    images: str | None = None
    genres: str | None = None
    price: str | None = None
    age_restriction: str | None = None
    description: str | None = None


class ValidationRules(_DocModel):
    required: list[str] = Field(default_factory=lambda: ["title", "venue.name", "date.start"])
    min_events_expected: int = Field(default=0, ge=0)
    max_events_expected: int | None = Field(default=None, ge=0)


class DebugOptions(_DocModel):
    screenshots: bool = False
    save_html: bool = False
    log_level: str = "info"


# ----------------------------
# Source (top-level unit)
# ----------------------------

class SourceConfig(_DocModel):
    site: SiteInfo
    enabled: bool = True
    schedule: str | None = Field(default=None, description="5-field cron; defaults to DEFAULT_SCHEDULE")
    trust_score: int = Field(default=DEFAULT_TRUST_SCORE, ge=0, le=100)

    browser: BrowserOptions = Field(default_factory=BrowserOptions)
    rate_limit: RateLimitOptions = Field(default_factory=RateLimitOptions)
    workflow: list[WorkflowAction] = Field(default_factory=list)
    mapping: MappingConfig
    validation: ValidationRules = Field(default_factory=ValidationRules)
    debug: DebugOptions = Field(default_factory=DebugOptions)

    @property
    def name(self) -> str:
        return self.site.source

    @field_validator("schedule")
    @classmethod
    def _validate_schedule(cls, v: str | None) -> str | None:
        if v is not None and len(v.split()) != 5:
            raise ValueError("schedule must be a 5-field cron expression")
        return v

    @model_validator(mode="after")
    def _post_checks(self) -> SourceConfig:
        if not self.workflow:
            raise ValueError("workflow must contain at least one action")
        if not any(isinstance(a, ExtractAction) for a in self.workflow):
            raise ValueError("workflow must contain an extract action")
        v = self.validation
        if v.max_events_expected is not None and v.max_events_expected < v.min_events_expected:
            raise ValueError("validation.maxEventsExpected must be >= minEventsExpected")
        return self


FollowUp.model_rebuild()
FieldSpec.model_rebuild()
ExtractAction.model_rebuild()
SourceConfig.model_rebuild()


# ----------------------------
# Helpers
# ----------------------------

def export_json_schema() -> dict[str, Any]:
    """
    Export a JSON schema for SourceConfig.
    Useful for docs, linting, or external validation.
    """
    return SourceConfig.model_json_schema(by_alias=True)
