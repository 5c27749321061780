"""
Webhook configuration schemas.

Rules, conditions, mappings and destinations are plain data with Literal tags.
They are validated here at the API boundary and stored as JSONB on the
webhook row; the evaluators in hookrelay.services interpret the stored dicts.
"""
import uuid
from typing import Any, Literal, Optional
from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

_HTTP_URL = TypeAdapter(AnyHttpUrl)
HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
ConditionOperator = Literal[
    "equals",
    "notEquals",
    "contains",
    "startsWith",
    "endsWith",
    "regex",
    "exists",
    "greaterThan",
    "lessThan",
]
RuleAction = Literal["forward", "skip", "transform"]
ValueTransform = Literal[
    "uppercase",
    "lowercase",
    "trim",
    "json-parse",
    "base64-encode",
    "base64-decode",
    "number",
    "string",
]
LifecycleEvent = Literal["received", "forwarded", "failed"]


def check_http_url(value: Optional[str]) -> Optional[str]:
    """Reject anything that is not an absolute http(s) URL. The string itself is stored unchanged."""
    if value is None:
        return None
    try:
        _HTTP_URL.validate_python(value)
    except ValidationError:
        raise ValueError(f"Invalid http(s) URL: {value!r}")
    return value


class Destination(BaseModel):
    """One named fan-out target."""
    name: str = Field(min_length=1, max_length=100)
    type: Literal["tunnel", "url"] = "url"
    tunnel_id: Optional[uuid.UUID] = None
    url: Optional[str] = None
    enabled: bool = True

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        return check_http_url(v)


class ForwardingConfig(BaseModel):
    enabled: bool = False
    target_type: Literal["none", "tunnel", "url", "multiple"] = "none"
    tunnel_id: Optional[uuid.UUID] = None
    target_url: Optional[str] = None
    destinations: list[Destination] = Field(default_factory=list)
    timeout: int = Field(default=30000, ge=1, le=300000)  # ms

    @field_validator("target_url")
    @classmethod
    def validate_target_url(cls, v):
        return check_http_url(v)


class SignatureConfig(BaseModel):
    enabled: bool = False
    algorithm: Literal["sha1", "sha256", "sha512"] = "sha256"
    secret: Optional[str] = None
    header_name: str = "X-Webhook-Signature"
    encoding: Literal["hex", "base64"] = "hex"


class SecurityConfig(BaseModel):
    require_auth: bool = False
    auth_type: Literal["none", "token", "basic"] = "none"
    auth_token: Optional[str] = None
    basic_username: Optional[str] = None
    basic_password: Optional[str] = None
    ip_whitelist: list[str] = Field(default_factory=list)
    signature: SignatureConfig = Field(default_factory=SignatureConfig)


class FilterConfig(BaseModel):
    allowed_methods: list[HttpMethod] = Field(default_factory=list)
    allowed_content_types: list[str] = Field(default_factory=list)


class RuleCondition(BaseModel):
    field: str = Field(min_length=1)  # dotted path, e.g. body.event.type
    operator: ConditionOperator = "equals"
    value: Any = None


class ForwardingRule(BaseModel):
    name: str = ""
    enabled: bool = True
    conditions: list[RuleCondition] = Field(default_factory=list)
    action: RuleAction = "forward"
    destinations: list[str] = Field(default_factory=list)


class FieldMapping(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(alias="from", min_length=1)
    target: str = Field(alias="to", min_length=1)
    transform: Optional[ValueTransform] = None


class AddField(BaseModel):
    path: str = Field(min_length=1)
    value: Any = None


class TransformationConfig(BaseModel):
    enabled: bool = False
    mappings: list[FieldMapping] = Field(default_factory=list)
    template: Optional[str] = None
    remove_fields: list[str] = Field(default_factory=list)
    add_fields: list[AddField] = Field(default_factory=list)


class NotificationChannel(BaseModel):
    enabled: bool = False
    url: Optional[str] = None
    events: list[LifecycleEvent] = Field(default_factory=lambda: ["failed"])

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        return check_http_url(v)


class NotificationConfig(BaseModel):
    slack: NotificationChannel = Field(default_factory=NotificationChannel)
    discord: NotificationChannel = Field(default_factory=NotificationChannel)
    webhook: NotificationChannel = Field(default_factory=NotificationChannel)


class RetentionConfig(BaseModel):
    keep_days: int = Field(default=7, ge=1, le=365)
    max_requests: int = Field(default=1000, ge=1, le=100000)


def dump_config(model: BaseModel) -> dict:
    """JSON-safe dict for a JSONB column (mappings keep their from/to keys)."""
    return model.model_dump(mode="json", by_alias=True)
