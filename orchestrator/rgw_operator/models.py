"""
ObjectStore custom resource model.

The operator never works on the raw custom object dict directly: every
reconcile pass re-reads the object and parses it into these Pydantic models,
then derives the multisite role once and passes it down.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError


class InvalidObjectStoreError(Exception):
    """The ObjectStore spec cannot be reconciled until the user fixes it."""


class MultisiteRole(str, Enum):
    """
    Role an ObjectStore plays in a multisite federation.

    Attributes:
        STANDALONE: No multisite configuration
        ORIGIN: Bootstraps a realm and publishes its token
        JOINER: Joins an existing realm as a new zone
        JOINING_ORIGIN: Both flags set; joins first, then bootstraps only if
            no realm exists afterwards
    """

    STANDALONE = "standalone"
    ORIGIN = "origin"
    JOINER = "joiner"
    JOINING_ORIGIN = "joining-origin"

    def __str__(self) -> str:
        return self.value

    @property
    def joins_realm(self) -> bool:
        return self in (MultisiteRole.JOINER, MultisiteRole.JOINING_ORIGIN)

    @property
    def bootstraps_realm(self) -> bool:
        return self in (MultisiteRole.ORIGIN, MultisiteRole.JOINING_ORIGIN)


class GatewaySpec(BaseModel):
    port: int = Field(default=0, description="Port the gateway service listens on (http)")


class MultisiteSpec(BaseModel):
    is_main_site: bool = Field(default=False, alias="isMainSite")
    realm_token_secret_name: str = Field(default="", alias="realmTokenSecretName")

    class Config:
        populate_by_name = True


class VolumeClaimSpec(BaseModel):
    access_modes: List[str] = Field(default_factory=list, alias="accessModes")
    storage_class_name: Optional[str] = Field(default=None, alias="storageClassName")
    # Quantities may be YAML numbers (`storage: 10`) as well as strings
    resources: Dict[str, Dict[str, Union[str, int, float]]] = Field(default_factory=dict)
    selector: Optional[Dict[str, Any]] = None

    class Config:
        populate_by_name = True
        extra = "ignore"


class VolumeClaimTemplate(BaseModel):
    metadata: Dict[str, Any] = Field(default_factory=dict)
    spec: VolumeClaimSpec = Field(default_factory=VolumeClaimSpec)

    class Config:
        extra = "ignore"


class ObjectStoreSpec(BaseModel):
    image: str
    # +nullable in the CRD
    gateway: Optional[GatewaySpec] = None
    multisite: Optional[MultisiteSpec] = None
    volume_claim_template: Optional[VolumeClaimTemplate] = Field(default=None, alias="volumeClaimTemplate")

    class Config:
        populate_by_name = True
        extra = "ignore"

    @property
    def is_multisite(self) -> bool:
        """True when this site joins a realm using a token secret."""
        return self.multisite is not None and self.multisite.realm_token_secret_name != ""

    @property
    def is_main_site(self) -> bool:
        """True when this site bootstraps its own realm."""
        return self.multisite is not None and self.multisite.is_main_site


class ObjectStoreMeta(BaseModel):
    name: str
    namespace: str
    uid: str = ""
    resource_version: str = Field(default="", alias="resourceVersion")
    generation: int = 0
    deletion_timestamp: Optional[str] = Field(default=None, alias="deletionTimestamp")
    finalizers: List[str] = Field(default_factory=list)

    class Config:
        populate_by_name = True
        extra = "ignore"


class ObjectStoreStatus(BaseModel):
    phase: str = ""


class ObjectStore(BaseModel):
    api_version: str = Field(alias="apiVersion")
    kind: str
    metadata: ObjectStoreMeta
    spec: ObjectStoreSpec
    status: ObjectStoreStatus = Field(default_factory=ObjectStoreStatus)

    class Config:
        populate_by_name = True
        extra = "ignore"

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "ObjectStore":
        """
        Parse a raw custom object as returned by the CustomObjectsApi.

        Raises:
            InvalidObjectStoreError: If the object does not match the schema
        """
        try:
            return cls.model_validate(dict(body))
        except ValidationError as e:
            raise InvalidObjectStoreError(f"invalid ObjectStore: {e}") from e

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @property
    def is_being_deleted(self) -> bool:
        return bool(self.metadata.deletion_timestamp)

    def gateway_port(self, default_port: int) -> int:
        """Service port of the gateway, falling back to the default when unset."""
        if self.spec.gateway is not None and self.spec.gateway.port:
            return self.spec.gateway.port
        return default_port

    def resolve_role(self) -> MultisiteRole:
        """
        Derive the multisite role of this ObjectStore.

        An object that is a main site and also references a realm token
        secret is not rejected: it gets JOINING_ORIGIN.
        """
        if self.spec.is_main_site and self.spec.is_multisite:
            return MultisiteRole.JOINING_ORIGIN
        if self.spec.is_main_site:
            return MultisiteRole.ORIGIN
        if self.spec.is_multisite:
            return MultisiteRole.JOINER
        return MultisiteRole.STANDALONE


def finalizer_name(kind: str, api_group: str, api_version: str) -> str:
    """
    Build the finalizer name of a resource kind.

    Examples:
        >>> finalizer_name("ObjectStore", "object.rook-s3-nano", "v1alpha1")
        "objectstore.object.rook-s3-nano/v1alpha1"
    """
    return f"{kind.lower()}.{api_group}/{api_version}"
