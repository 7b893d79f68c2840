"""Pydantic models for the NLB resource with validation.

These models provide:
1. Type-safe parsing of the resource as stored by the orchestration platform
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to provider request parameters
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Resource identity
# =============================================================================

API_GROUP = "nlboperator.alibabacloud.com"
API_VERSION = "v1"
NLB_KIND_NAME = "NLB"
NLB_PLURAL = "nlbs"

# Deletion guard: provider resources must be torn down before the record goes away
NLB_FINALIZER = "nlboperator.alibabacloud.com/finalizer"

# Coarse lifecycle values written to status.loadBalancerStatus
LB_STATUS_PROVISIONING = "Provisioning"
LB_STATUS_ACTIVE = "Active"
LB_STATUS_DELETING = "Deleting"

LISTENER_STATUS_ACTIVE = "Active"


@dataclass(frozen=True)
class ResourceKey:
    """Identity of one resource instance: (namespace, name)."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


# =============================================================================
# Desired Spec
# =============================================================================


class ZoneMapping(BaseModel):
    """Zone and vSwitch placement for the load balancer."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    zone_id: Annotated[str, Field(min_length=1, alias="zoneId")]
    vswitch_id: Annotated[str, Field(min_length=1, alias="vSwitchId")]
    allocation_id: str | None = Field(None, alias="allocationId")
    private_ipv4_address: str | None = Field(None, alias="privateIPv4Address")


class DeletionProtectionConfig(BaseModel):
    """Deletion protection for the load balancer."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    enabled: bool = False
    reason: str | None = None


class ModificationProtectionConfig(BaseModel):
    """Modification protection for the load balancer."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    status: str
    reason: str | None = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        valid = {"ConsoleProtection", "NonProtection"}
        if v not in valid:
            raise ValueError(f"status must be one of {valid}")
        return v


class Tag(BaseModel):
    """Key/value tag applied to the load balancer."""

    model_config = {"extra": "ignore"}

    key: Annotated[str, Field(min_length=1, max_length=128)]
    value: str = ""


class ListenerSpec(BaseModel):
    """Listener configuration, keyed by port within one load balancer."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    listener_protocol: str = Field(alias="listenerProtocol")
    listener_port: Annotated[int, Field(ge=1, le=65535, alias="listenerPort")]
    server_group_id: Annotated[str, Field(min_length=1, alias="serverGroupId")]
    listener_description: str | None = Field(None, alias="listenerDescription")
    idle_timeout: int | None = Field(None, ge=1, le=900, alias="idleTimeout")
    security_policy_id: str | None = Field(None, alias="securityPolicyId")
    certificate_ids: list[str] = Field(default_factory=list, alias="certificateIds")
    ca_certificate_ids: list[str] = Field(default_factory=list, alias="caCertificateIds")
    ca_enabled: bool | None = Field(None, alias="caEnabled")
    proxy_protocol_enabled: bool | None = Field(None, alias="proxyProtocolEnabled")

    @field_validator("listener_protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        valid = {"TCP", "UDP", "TCPSSL"}
        if v not in valid:
            raise ValueError(f"listenerProtocol must be one of {valid}")
        return v

    def to_create_params(self, load_balancer_id: str) -> dict[str, Any]:
        """Convert to CreateListener request parameters."""
        params: dict[str, Any] = {
            "LoadBalancerId": load_balancer_id,
            "ListenerProtocol": self.listener_protocol,
            "ListenerPort": self.listener_port,
            "ServerGroupId": self.server_group_id,
        }

        if self.listener_description:
            params["ListenerDescription"] = self.listener_description
        if self.idle_timeout:
            params["IdleTimeout"] = self.idle_timeout
        if self.security_policy_id:
            params["SecurityPolicyId"] = self.security_policy_id
        if self.certificate_ids:
            params["CertificateIds"] = list(self.certificate_ids)
        if self.ca_certificate_ids:
            params["CaCertificateIds"] = list(self.ca_certificate_ids)
        if self.ca_enabled is not None:
            params["CaEnabled"] = self.ca_enabled
        if self.proxy_protocol_enabled is not None:
            params["ProxyProtocolEnabled"] = self.proxy_protocol_enabled

        return params


class NLBSpec(BaseModel):
    """Desired state of one network load balancer and its listeners."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    load_balancer_name: str | None = Field(None, alias="loadBalancerName")
    address_type: str = Field("Internet", alias="addressType")
    address_ip_version: str = Field("ipv4", alias="addressIpVersion")
    vpc_id: Annotated[str, Field(min_length=1, alias="vpcId")]
    zone_mappings: list[ZoneMapping] = Field(alias="zoneMappings")
    resource_group_id: str | None = Field(None, alias="resourceGroupId")
    security_group_ids: list[str] = Field(default_factory=list, alias="securityGroupIds")
    bandwidth_package_id: str | None = Field(None, alias="bandwidthPackageId")
    deletion_protection: DeletionProtectionConfig | None = Field(None, alias="deletionProtection")
    modification_protection: ModificationProtectionConfig | None = Field(
        None, alias="modificationProtection"
    )
    tags: list[Tag] = Field(default_factory=list)
    listeners: list[ListenerSpec] = Field(default_factory=list)

    @field_validator("address_type")
    @classmethod
    def validate_address_type(cls, v: str) -> str:
        valid = {"Internet", "Intranet"}
        if v not in valid:
            raise ValueError(f"addressType must be one of {valid}")
        return v

    @field_validator("address_ip_version")
    @classmethod
    def validate_address_ip_version(cls, v: str) -> str:
        valid = {"ipv4", "DualStack"}
        if v not in valid:
            raise ValueError(f"addressIpVersion must be one of {valid}")
        return v

    @field_validator("zone_mappings")
    @classmethod
    def validate_zone_mappings(cls, v: list[ZoneMapping]) -> list[ZoneMapping]:
        if len(v) < 2:
            raise ValueError("zoneMappings must contain at least 2 zones")
        return v

    @field_validator("listeners")
    @classmethod
    def validate_unique_ports(cls, v: list[ListenerSpec]) -> list[ListenerSpec]:
        seen: set[int] = set()
        for listener in v:
            if listener.listener_port in seen:
                raise ValueError(f"duplicate listenerPort {listener.listener_port}")
            seen.add(listener.listener_port)
        return v

    def to_create_params(self) -> dict[str, Any]:
        """Convert spec to CreateLoadBalancer request parameters."""
        params: dict[str, Any] = {
            "AddressType": self.address_type,
            "VpcId": self.vpc_id,
        }

        if self.load_balancer_name:
            params["LoadBalancerName"] = self.load_balancer_name
        if self.address_ip_version:
            params["AddressIpVersion"] = self.address_ip_version
        if self.resource_group_id:
            params["ResourceGroupId"] = self.resource_group_id
        if self.bandwidth_package_id:
            params["BandwidthPackageId"] = self.bandwidth_package_id

        zone_mappings = []
        for zm in self.zone_mappings:
            mapping = {"ZoneId": zm.zone_id, "VSwitchId": zm.vswitch_id}
            if zm.allocation_id:
                mapping["AllocationId"] = zm.allocation_id
            if zm.private_ipv4_address:
                mapping["PrivateIPv4Address"] = zm.private_ipv4_address
            zone_mappings.append(mapping)
        params["ZoneMappings"] = zone_mappings

        if self.deletion_protection is not None:
            deletion: dict[str, Any] = {"Enabled": self.deletion_protection.enabled}
            if self.deletion_protection.reason:
                deletion["Reason"] = self.deletion_protection.reason
            params["DeletionProtectionConfig"] = deletion

        if self.modification_protection is not None:
            modification: dict[str, Any] = {"Status": self.modification_protection.status}
            if self.modification_protection.reason:
                modification["Reason"] = self.modification_protection.reason
            params["ModificationProtectionConfig"] = modification

        if self.tags:
            params["Tag"] = [{"Key": t.key, "Value": t.value} for t in self.tags]

        return params


# =============================================================================
# Observed Status
# =============================================================================


class Condition(BaseModel):
    """One typed entry of the condition ledger."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: str = Field("", alias="lastTransitionTime")
    observed_generation: int = Field(0, alias="observedGeneration")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        valid = {"True", "False", "Unknown"}
        if v not in valid:
            raise ValueError(f"status must be one of {valid}")
        return v


class ListenerStatus(BaseModel):
    """Provider-assigned listener id recorded for one port."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    listener_port: int = Field(alias="listenerPort")
    listener_id: str = Field("", alias="listenerId")
    status: str = ""


class NLBStatus(BaseModel):
    """Controller-owned record of what has actually been provisioned."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    load_balancer_id: str = Field("", alias="loadBalancerId")
    dns_name: str = Field("", alias="dnsName")
    load_balancer_status: str = Field("", alias="loadBalancerStatus")
    conditions: list[Condition] = Field(default_factory=list)
    listener_status: list[ListenerStatus] = Field(default_factory=list, alias="listenerStatus")

    def clear_provider_state(self) -> None:
        """Forget the provider resource and its listeners (used when it vanished externally)."""
        self.load_balancer_id = ""
        self.dns_name = ""
        self.load_balancer_status = ""
        self.listener_status = []

    def to_wire(self) -> dict[str, Any]:
        """Serialize in the persisted camelCase shape."""
        return self.model_dump(by_alias=True, mode="json")


# =============================================================================
# Resource envelope
# =============================================================================


class ResourceMetadata(BaseModel):
    """Subset of object metadata the controller relies on."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    namespace: str = "default"
    uid: str = ""
    generation: int = 0
    resource_version: str = Field("", alias="resourceVersion")
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: str | None = Field(None, alias="deletionTimestamp")


class NLBResource(BaseModel):
    """An NLB object: metadata, desired spec and observed status."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(f"{API_GROUP}/{API_VERSION}", alias="apiVersion")
    kind: str = NLB_KIND_NAME
    metadata: ResourceMetadata
    spec: NLBSpec
    status: NLBStatus = Field(default_factory=NLBStatus)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.metadata.namespace, self.metadata.name)

    @property
    def deletion_requested(self) -> bool:
        return bool(self.metadata.deletion_timestamp)

    def has_finalizer(self, finalizer: str = NLB_FINALIZER) -> bool:
        return finalizer in self.metadata.finalizers


# =============================================================================
# Kind registration
# =============================================================================


@dataclass(frozen=True)
class ResourceKind:
    """Describes how one resource type is addressed in the platform API."""

    group: str
    version: str
    kind: str
    plural: str
    model: type[NLBResource]

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


NLB_KIND = ResourceKind(
    group=API_GROUP,
    version=API_VERSION,
    kind=NLB_KIND_NAME,
    plural=NLB_PLURAL,
    model=NLBResource,
)


def register_kinds(*kinds: ResourceKind) -> dict[str, ResourceKind]:
    """Build the kind registry passed to the store and manifest loader.

    Called once at process start with the concrete resource kinds.

    Raises:
        ValueError: If the same kind is registered twice.
    """
    registry: dict[str, ResourceKind] = {}
    for kind in kinds:
        if kind.kind in registry:
            raise ValueError(f"Kind '{kind.kind}' registered twice")
        registry[kind.kind] = kind
    return registry
