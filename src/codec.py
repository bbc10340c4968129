"""
Provider Config Codec - Versioned encode/decode of provider configuration.

A generic resource carries its provider configuration as an opaque payload.
The payload is a mapping that starts with an ``apiVersion``/``kind`` marker;
the marker alone selects the schema that parses it. Several schema versions
are registered side by side so stored objects can be migrated live.

Encoding always emits the current schema version.
"""

import dataclasses
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from errors import EncodeError, MalformedPayloadError, SchemaError
from provider_config import ProviderConfig
from validation import validate_document, validate_schema

logger = logging.getLogger(__name__)

GROUP = "awsproviderconfig.openshift.io"
KIND = "AWSMachineProviderConfig"
V1ALPHA1 = f"{GROUP}/v1alpha1"
V1BETA1 = f"{GROUP}/v1beta1"
CURRENT_VERSION = V1BETA1

_FILTER = {
    "type": "object",
    "required": ["name"],
    "properties": {
        "name": {"type": "string"},
        "values": {"type": "array", "items": {"type": "string"}},
    },
}

_RESOURCE_REFERENCE = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "arn": {"type": "string"},
        "filters": {"type": "array", "items": _FILTER},
    },
}

_LOCAL_OBJECT_REFERENCE = {
    "type": "object",
    "properties": {"name": {"type": "string"}},
}


def _load_payload(raw: bytes) -> Any:
    """
    Parse a payload as JSON, falling back to YAML.

    Raises:
        MalformedPayloadError: If the payload is neither JSON nor YAML
    """
    try:
        return json.loads(raw)
    except ValueError:
        pass

    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise MalformedPayloadError(
            f"provider config payload is not valid YAML/JSON: {e}"
        ) from e


def _machine_provider_schema(public_ip_field: str) -> Dict[str, Any]:
    """Properties shared by every AWSMachineProviderConfig version."""
    return {
        "type": "object",
        "required": ["apiVersion", "kind"],
        "properties": {
            "apiVersion": {"type": "string"},
            "kind": {"type": "string"},
            "ami": _RESOURCE_REFERENCE,
            "instanceType": {"type": "string"},
            "tags": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["name"],
                    "properties": {
                        "name": {"type": "string"},
                        "value": {"type": "string"},
                    },
                },
            },
            "iamInstanceProfile": _RESOURCE_REFERENCE,
            "userDataSecret": _LOCAL_OBJECT_REFERENCE,
            "credentialsSecret": _LOCAL_OBJECT_REFERENCE,
            "keyName": {"type": "string"},
            "deviceIndex": {"type": "integer", "minimum": 0},
            public_ip_field: {"type": "boolean"},
            "securityGroups": {"type": "array", "items": _RESOURCE_REFERENCE},
            "subnet": _RESOURCE_REFERENCE,
            "placement": {
                "type": "object",
                "properties": {
                    "region": {"type": "string"},
                    "availabilityZone": {"type": "string"},
                    "tenancy": {"type": "string"},
                },
            },
            "loadBalancers": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["name"],
                    "properties": {
                        "name": {"type": "string"},
                        "type": {"enum": ["classic", "network"]},
                    },
                },
            },
        },
    }


class ProviderConfigSchema(ABC):
    """One registered schema version of the provider configuration."""

    api_version: str
    kind: str = KIND

    @property
    def marker(self) -> Tuple[str, str]:
        return (self.api_version, self.kind)

    @property
    @abstractmethod
    def json_schema(self) -> Dict[str, Any]:
        """JSON Schema (Draft 7) the wire document must satisfy."""
        pass

    @abstractmethod
    def read(self, document: Dict[str, Any]) -> ProviderConfig:
        """Build the typed value from a validated wire document."""
        pass

    @abstractmethod
    def write(self, config: ProviderConfig) -> Dict[str, Any]:
        """Serialize the typed value to this version's wire fields."""
        pass

    def restrict(self, config: ProviderConfig) -> ProviderConfig:
        """Clear fields this version does not carry."""
        return config


class V1Beta1Schema(ProviderConfigSchema):
    """Current schema: ``publicIP`` and block device mappings."""

    api_version = V1BETA1

    def __init__(self):
        schema = _machine_provider_schema("publicIP")
        schema["properties"]["blockDevices"] = {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "deviceName": {"type": "string"},
                    "ebs": {
                        "type": "object",
                        "properties": {
                            "volumeSize": {"type": "integer", "minimum": 1},
                            "volumeType": {"type": "string"},
                            "iops": {"type": "integer", "minimum": 0},
                            "encrypted": {"type": "boolean"},
                            "deleteOnTermination": {"type": "boolean"},
                        },
                    },
                },
            },
        }
        self._schema = schema

    @property
    def json_schema(self) -> Dict[str, Any]:
        return self._schema

    def read(self, document: Dict[str, Any]) -> ProviderConfig:
        return ProviderConfig.from_dict(document)

    def write(self, config: ProviderConfig) -> Dict[str, Any]:
        return config.to_dict()


class V1Alpha1Schema(ProviderConfigSchema):
    """Legacy schema: ``publicIp`` spelling, no block device mappings."""

    api_version = V1ALPHA1

    def __init__(self):
        self._schema = _machine_provider_schema("publicIp")

    @property
    def json_schema(self) -> Dict[str, Any]:
        return self._schema

    def read(self, document: Dict[str, Any]) -> ProviderConfig:
        body = dict(document)
        body.pop("blockDevices", None)
        if "publicIp" in body:
            body["publicIP"] = body.pop("publicIp")
        return ProviderConfig.from_dict(body)

    def write(self, config: ProviderConfig) -> Dict[str, Any]:
        body = config.to_dict()
        body.pop("blockDevices", None)
        if "publicIP" in body:
            body["publicIp"] = body.pop("publicIP")
        return body

    def restrict(self, config: ProviderConfig) -> ProviderConfig:
        return dataclasses.replace(config, block_devices=[])


class ProviderConfigCodec:
    """
    Encodes and decodes provider configuration payloads.

    Decoding dispatches purely on the payload's embedded marker; the
    ``target_version`` argument only shapes the returned value to what the
    consuming version understands.
    """

    def __init__(self, current_version: str = CURRENT_VERSION):
        self.current_version = current_version
        self._schemas: Dict[Tuple[str, str], ProviderConfigSchema] = {}

    def register(self, schema: ProviderConfigSchema) -> None:
        """
        Register a schema version.

        Raises:
            ValueError: If the marker is already registered or the schema's
                JSON Schema is invalid
        """
        if schema.marker in self._schemas:
            raise ValueError(
                f"Schema {schema.api_version}/{schema.kind} is already registered"
            )
        valid, message = validate_schema(schema.json_schema)
        if not valid:
            raise ValueError(f"Schema {schema.api_version}/{schema.kind}: {message}")
        self._schemas[schema.marker] = schema
        logger.debug(f"Registered provider config schema {schema.api_version}")

    def versions(self) -> List[str]:
        """Return the registered API versions."""
        return sorted({api_version for api_version, _ in self._schemas})

    def schema_for(self, api_version: str, kind: str = KIND) -> ProviderConfigSchema:
        schema = self._schemas.get((api_version, kind))
        if schema is None:
            raise SchemaError(
                f"no schema registered for apiVersion={api_version!r} kind={kind!r}",
                api_version=api_version,
                kind=kind,
            )
        return schema

    def decode(
        self,
        raw: Union[bytes, str, None],
        target_version: Optional[str] = None,
    ) -> ProviderConfig:
        """
        Decode a raw payload into a typed ProviderConfig.

        Args:
            raw: The encoded payload (JSON or YAML)
            target_version: API version the caller consumes; defaults to the
                current version

        Returns:
            The decoded ProviderConfig

        Raises:
            SchemaError: If the marker or the target version is unknown
            MalformedPayloadError: If the payload cannot be parsed or does
                not satisfy the matched schema
        """
        target = self.schema_for(target_version or self.current_version)

        if not raw:
            raise MalformedPayloadError("provider config payload is empty")
        if isinstance(raw, str):
            raw = raw.encode("utf-8")

        document = _load_payload(raw)

        if not isinstance(document, dict):
            raise MalformedPayloadError(
                "provider config payload must be a mapping, "
                f"got {type(document).__name__}"
            )

        api_version = document.get("apiVersion")
        kind = document.get("kind")
        if not isinstance(api_version, str) or not isinstance(kind, str):
            raise SchemaError(
                "provider config payload has no apiVersion/kind marker",
                api_version=api_version if isinstance(api_version, str) else None,
                kind=kind if isinstance(kind, str) else None,
            )
        schema = self.schema_for(api_version, kind)

        valid, message = validate_document(document, schema.json_schema)
        if not valid:
            raise MalformedPayloadError(
                f"provider config does not match {api_version}/{kind}: {message}"
            )

        try:
            config = schema.read(document)
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedPayloadError(
                f"failed to read {api_version}/{kind} provider config: {e}"
            ) from e

        if target.kind != kind:
            raise SchemaError(
                f"cannot convert kind {kind!r} to {target.kind!r}",
                api_version=api_version,
                kind=kind,
            )
        return target.restrict(config)

    def encode(self, config: ProviderConfig) -> bytes:
        """
        Encode a ProviderConfig tagged with the current schema version.

        Raises:
            EncodeError: If the value cannot be serialized
        """
        try:
            return json.dumps(self.to_document(config), sort_keys=True).encode(
                "utf-8"
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise EncodeError(f"failed to encode provider config: {e}") from e

    def to_document(self, config: ProviderConfig) -> Dict[str, Any]:
        """Return the current version's wire document for a config."""
        schema = self.schema_for(self.current_version)
        document = {"apiVersion": schema.api_version, "kind": schema.kind}
        document.update(schema.write(config))
        return document

    def encode_provider_spec(self, config: ProviderConfig) -> Dict[str, Any]:
        """Return a ``providerSpec`` block embedding the encoded config."""
        try:
            return {"value": self.to_document(config)}
        except (AttributeError, TypeError) as e:
            raise EncodeError(f"failed to encode provider spec: {e}") from e

    def decode_provider_spec(
        self, resource: Any, target_version: Optional[str] = None
    ) -> ProviderConfig:
        """Decode the provider config embedded in a GenericResource."""
        return self.decode(resource.provider_spec_raw(), target_version)


def new_codec() -> ProviderConfigCodec:
    """Return a codec with every supported schema version registered."""
    codec = ProviderConfigCodec()
    codec.register(V1Alpha1Schema())
    codec.register(V1Beta1Schema())
    return codec
