"""
Provider Configuration - Typed AWS machine provider configuration.

These value objects are version-agnostic; the codec module maps them to and
from the wire form of each registered schema version. ``to_dict`` and
``from_dict`` use the field names of the current schema and omit unset
optional fields, so an omitted field and its default compare equal after a
round trip.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop None values and empty collections."""
    return {
        key: value
        for key, value in data.items()
        if value is not None and value != [] and value != {}
    }


@dataclass
class Filter:
    """A name/values filter used to look up AWS resources."""

    name: str = ""
    values: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "values": list(self.values)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Filter":
        return cls(name=data.get("name", ""), values=list(data.get("values") or []))


@dataclass
class ResourceReference:
    """Reference to an AWS resource by ID, ARN, or filters."""

    id: Optional[str] = None
    arn: Optional[str] = None
    filters: List[Filter] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "id": self.id,
                "arn": self.arn,
                "filters": [f.to_dict() for f in self.filters],
            }
        )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ResourceReference":
        data = data or {}
        return cls(
            id=data.get("id"),
            arn=data.get("arn"),
            filters=[Filter.from_dict(f) for f in data.get("filters") or []],
        )


@dataclass
class Placement:
    """Where an instance is placed."""

    region: str = ""
    availability_zone: str = ""
    tenancy: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "region": self.region or None,
                "availabilityZone": self.availability_zone or None,
                "tenancy": self.tenancy,
            }
        )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Placement":
        data = data or {}
        return cls(
            region=data.get("region", ""),
            availability_zone=data.get("availabilityZone", ""),
            tenancy=data.get("tenancy"),
        )


@dataclass
class TagSpecification:
    """A tag applied to created AWS resources."""

    name: str = ""
    value: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TagSpecification":
        return cls(name=data.get("name", ""), value=data.get("value", ""))


@dataclass
class LocalObjectReference:
    """Reference to an object in the same namespace."""

    name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name}

    @classmethod
    def from_dict(
        cls, data: Optional[Dict[str, Any]]
    ) -> Optional["LocalObjectReference"]:
        if data is None:
            return None
        return cls(name=data.get("name", ""))


@dataclass
class LoadBalancerReference:
    """A load balancer an instance is registered with."""

    name: str = ""
    type: str = "classic"

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoadBalancerReference":
        return cls(name=data.get("name", ""), type=data.get("type", "classic"))


@dataclass
class EBSBlockDevice:
    """EBS volume parameters of a block device mapping."""

    volume_size: Optional[int] = None
    volume_type: Optional[str] = None
    iops: Optional[int] = None
    encrypted: Optional[bool] = None
    delete_on_termination: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "volumeSize": self.volume_size,
                "volumeType": self.volume_type,
                "iops": self.iops,
                "encrypted": self.encrypted,
                "deleteOnTermination": self.delete_on_termination,
            }
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EBSBlockDevice":
        return cls(
            volume_size=data.get("volumeSize"),
            volume_type=data.get("volumeType"),
            iops=data.get("iops"),
            encrypted=data.get("encrypted"),
            delete_on_termination=data.get("deleteOnTermination"),
        )


@dataclass
class BlockDeviceMapping:
    """A block device attached to the instance."""

    device_name: Optional[str] = None
    ebs: Optional[EBSBlockDevice] = None

    def to_dict(self) -> Dict[str, Any]:
        body = _compact({"deviceName": self.device_name})
        if self.ebs is not None:
            body["ebs"] = self.ebs.to_dict()
        return body

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlockDeviceMapping":
        ebs = data.get("ebs")
        return cls(
            device_name=data.get("deviceName"),
            ebs=EBSBlockDevice.from_dict(ebs) if ebs is not None else None,
        )


@dataclass
class ProviderConfig:
    """AWSMachineProviderConfig: how to create an AWS instance for a machine."""

    ami: ResourceReference = field(default_factory=ResourceReference)
    instance_type: str = ""
    tags: List[TagSpecification] = field(default_factory=list)
    iam_instance_profile: Optional[ResourceReference] = None
    user_data_secret: Optional[LocalObjectReference] = None
    credentials_secret: Optional[LocalObjectReference] = None
    key_name: Optional[str] = None
    device_index: int = 0
    public_ip: Optional[bool] = None
    security_groups: List[ResourceReference] = field(default_factory=list)
    subnet: ResourceReference = field(default_factory=ResourceReference)
    placement: Placement = field(default_factory=Placement)
    load_balancers: List[LoadBalancerReference] = field(default_factory=list)
    block_devices: List[BlockDeviceMapping] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the current schema's field layout (no apiVersion/kind)."""
        body = _compact(
            {
                "ami": self.ami.to_dict(),
                "instanceType": self.instance_type or None,
                "tags": [t.to_dict() for t in self.tags],
                "userDataSecret": (
                    self.user_data_secret.to_dict()
                    if self.user_data_secret is not None
                    else None
                ),
                "credentialsSecret": (
                    self.credentials_secret.to_dict()
                    if self.credentials_secret is not None
                    else None
                ),
                "keyName": self.key_name,
                "publicIP": self.public_ip,
                "securityGroups": [sg.to_dict() for sg in self.security_groups],
                "subnet": self.subnet.to_dict(),
                "placement": self.placement.to_dict(),
                "loadBalancers": [lb.to_dict() for lb in self.load_balancers],
                "blockDevices": [bd.to_dict() for bd in self.block_devices],
            }
        )
        if self.iam_instance_profile is not None:
            body["iamInstanceProfile"] = self.iam_instance_profile.to_dict()
        body["deviceIndex"] = self.device_index
        return body

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderConfig":
        """Build from the current schema's field layout."""
        iam = data.get("iamInstanceProfile")
        return cls(
            ami=ResourceReference.from_dict(data.get("ami")),
            instance_type=data.get("instanceType", ""),
            tags=[TagSpecification.from_dict(t) for t in data.get("tags") or []],
            iam_instance_profile=(
                ResourceReference.from_dict(iam) if iam is not None else None
            ),
            user_data_secret=LocalObjectReference.from_dict(
                data.get("userDataSecret")
            ),
            credentials_secret=LocalObjectReference.from_dict(
                data.get("credentialsSecret")
            ),
            key_name=data.get("keyName"),
            device_index=data.get("deviceIndex", 0),
            public_ip=data.get("publicIP"),
            security_groups=[
                ResourceReference.from_dict(sg)
                for sg in data.get("securityGroups") or []
            ],
            subnet=ResourceReference.from_dict(data.get("subnet")),
            placement=Placement.from_dict(data.get("placement")),
            load_balancers=[
                LoadBalancerReference.from_dict(lb)
                for lb in data.get("loadBalancers") or []
            ],
            block_devices=[
                BlockDeviceMapping.from_dict(bd)
                for bd in data.get("blockDevices") or []
            ],
        )
