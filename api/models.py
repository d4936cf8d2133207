"""
API request and response models for the Cardinal webhook endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py and
inventory/models.py, which own the internal domain representation. Route
handlers map between the two.

Field names follow the webhook contract CI jobs already use (ct_id,
jenkins_job_id, additionalConfig), not Python naming.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.models import HOSTNAME_PATTERN, AccessBundle, CreationResult, ProvisioningRequest
from inventory.models import ContainerRecord

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CreateContainerRequest(BaseModel):
    """Request body for POST /webhook/create-container.

    Sizing fields are optional; unset values fall back to CT_DEFAULT_* and
    then to the built-in defaults. There is deliberately no password field:
    container passwords are always generated server-side.
    """

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    name: str = Field(min_length=3, max_length=50, description="Display name of the container")
    hostname: str = Field(
        min_length=3,
        max_length=50,
        pattern=HOSTNAME_PATTERN,
        description="Container hostname (letters, digits and hyphens only)",
    )
    cores: Optional[int] = Field(default=None, ge=1, le=16, description="CPU cores")
    memory: Optional[int] = Field(default=None, ge=512, le=32768, description="RAM in MB")
    disk: Optional[int] = Field(default=None, ge=4, le=500, description="Root disk size in GB")
    ostemplate: Optional[str] = Field(default=None, max_length=255, description="OS template to use")
    jenkins_job_id: Optional[str] = Field(default=None, max_length=255, description="Upstream CI job id")
    additional_config: dict[str, Any] = Field(
        default_factory=dict,
        alias="additionalConfig",
        description="Raw hypervisor parameters merged over the defaults",
    )

    def to_domain(self) -> ProvisioningRequest:
        return ProvisioningRequest(
            name=self.name,
            hostname=self.hostname,
            cores=self.cores,
            memory=self.memory,
            disk=self.disk,
            ostemplate=self.ostemplate,
            jenkins_job_id=self.jenkins_job_id,
            additional_config=dict(self.additional_config),
        )


class GetAccessRequest(BaseModel):
    """Request body for POST /webhook/get-access."""

    model_config = ConfigDict(str_strip_whitespace=True)

    ct_id: str = Field(min_length=1, max_length=32, description="Container id")

    @field_validator("ct_id", mode="before")
    @classmethod
    def coerce_ct_id(cls, value: Any) -> Any:
        """Accept numeric ids from CI scripts that send the VMID unquoted."""
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ContainerSummary(BaseModel):
    """The container block of a create-container response."""

    model_config = ConfigDict(frozen=True)

    id: int
    ct_id: str
    name: str
    hostname: str
    username: str
    status: str

    @classmethod
    def from_result(cls, result: CreationResult) -> "ContainerSummary":
        return cls(
            id=result.id,
            ct_id=result.ct_id,
            name=result.name,
            hostname=result.hostname,
            username=result.username,
            status=result.status,
        )


class CreateContainerResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    container: ContainerSummary
    message: str = "Container creation started successfully"


class AccessDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    ct_id: str
    ip_address: Optional[str]
    username: str
    password: str

    @classmethod
    def from_bundle(cls, bundle: AccessBundle) -> "AccessDetail":
        return cls(
            ct_id=bundle.ct_id,
            ip_address=bundle.ip_address,
            username=bundle.username,
            password=bundle.password,
        )


class AccessResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    access: AccessDetail
    message: str = "Container access granted"


class ContainerListRow(BaseModel):
    """One row in GET /webhook/containers. Never carries the password."""

    model_config = ConfigDict(frozen=True)

    id: int
    ct_id: str
    name: str
    ip_address: Optional[str]
    username: str
    status: str
    jenkins_job_id: Optional[str]
    created_at: str

    @classmethod
    def from_record(cls, record: ContainerRecord) -> "ContainerListRow":
        return cls(
            id=record.id,
            ct_id=record.ct_id,
            name=record.name,
            ip_address=record.ip_address,
            username=record.username,
            status=record.status,
            jenkins_job_id=record.jenkins_job_id,
            created_at=record.created_at,
        )


class ContainerListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    containers: list[ContainerListRow] = Field(default_factory=list)


class WebhookHealthResponse(BaseModel):
    """Response for GET /webhook/health."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str = "Cardinal webhook service is running"
    timestamp: str


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class FieldError(BaseModel):
    """One failed field in a validation error response."""

    model_config = ConfigDict(frozen=True)

    field: str
    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    fields: Optional[list[FieldError]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
