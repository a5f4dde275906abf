"""Resource kinds handled by the simulated provider."""

from typing import Any, Callable, Dict

from providers.base import ResourceTypeSpec

_TAGS = {"type": "object", "additionalProperties": {"type": "string"}}

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

_INGRESS_RULE = {
    "type": "object",
    "required": ["port"],
    "properties": {
        "port": {"type": "integer", "minimum": 0, "maximum": 65535},
        "protocol": {"type": "string", "enum": ["tcp", "udp", "icmp", "all"]},
        "source": {"type": "string"},
        "description": {"type": "string"},
    },
    "additionalProperties": False,
}


def _object(required, properties) -> Dict[str, Any]:
    schema = {
        "type": "object",
        "properties": dict(properties, tags=_TAGS),
        "additionalProperties": False,
    }
    if required:
        schema["required"] = list(required)
    return schema


RESOURCE_TYPES: Dict[str, ResourceTypeSpec] = {
    "network": ResourceTypeSpec(
        description="Virtual network spanning one or more availability zones",
        immutable=frozenset({"cidr"}),
        schema=_object(
            ["cidr"],
            {
                "cidr": {"type": "string"},
                "max_azs": {"type": "integer", "minimum": 1, "maximum": 6},
                "nat_gateways": {"type": "integer", "minimum": 0},
                "dns_hostnames": {"type": "boolean"},
            },
        ),
    ),
    "subnet": ResourceTypeSpec(
        description="Address range inside a network",
        immutable=frozenset({"network_id", "cidr", "availability_zone"}),
        schema=_object(
            ["network_id", "cidr"],
            {
                "network_id": {"type": "string"},
                "cidr": {"type": "string"},
                "kind": {"type": "string", "enum": ["public", "private", "isolated"]},
                "availability_zone": {"type": "string"},
            },
        ),
    ),
    "security-group": ResourceTypeSpec(
        description="Stateful firewall attached to network interfaces",
        immutable=frozenset({"network_id"}),
        schema=_object(
            ["network_id"],
            {
                "network_id": {"type": "string"},
                "description": {"type": "string"},
                "allow_all_outbound": {"type": "boolean"},
                "ingress": {"type": "array", "items": _INGRESS_RULE},
            },
        ),
    ),
    "compute-instance": ResourceTypeSpec(
        description="Virtual machine",
        immutable=frozenset({"image", "subnet_id", "key_name"}),
        schema=_object(
            ["instance_type", "image", "subnet_id"],
            {
                "instance_type": {"type": "string"},
                "image": {"type": "string"},
                "subnet_id": {"type": "string"},
                "security_group_ids": _STRING_LIST,
                "key_name": {"type": "string"},
                "root_volume_gb": {"type": "integer", "minimum": 8},
                "public_ip": {"type": "boolean"},
                "role": {"type": "string"},
                "user_data": {"type": "string"},
            },
        ),
    ),
    "managed-database": ResourceTypeSpec(
        description="Managed relational database cluster",
        immutable=frozenset(
            {"engine", "database_name", "subnet_ids", "storage_encrypted"}
        ),
        schema=_object(
            ["engine", "instance_class", "subnet_ids"],
            {
                "engine": {"type": "string", "enum": ["postgres", "mysql"]},
                "engine_version": {"type": "string"},
                "instance_class": {"type": "string"},
                "database_name": {"type": "string"},
                "subnet_ids": _STRING_LIST,
                "security_group_ids": _STRING_LIST,
                "credentials_secret": {"type": "string"},
                "readers": {"type": "integer", "minimum": 0, "maximum": 15},
                "backup_retention_days": {"type": "integer", "minimum": 1},
                "deletion_protection": {"type": "boolean"},
                "storage_encrypted": {"type": "boolean"},
                "parameters": {
                    "type": "object",
                    "additionalProperties": {"type": "string"},
                },
            },
        ),
    ),
    "secret": ResourceTypeSpec(
        description="Generated credential stored in a secret manager",
        immutable=frozenset({"name"}),
        schema=_object(
            ["name"],
            {
                "name": {"type": "string"},
                "description": {"type": "string"},
                "template": {"type": "object"},
                "generate_key": {"type": "string"},
                "length": {"type": "integer", "minimum": 8},
            },
        ),
    ),
    "alarm": ResourceTypeSpec(
        description="Threshold alarm on a resource metric",
        immutable=frozenset({"target"}),
        schema=_object(
            ["target", "metric", "threshold"],
            {
                "target": {"type": "string"},
                "metric": {"type": "string"},
                "threshold": {"type": "number"},
                "evaluation_periods": {"type": "integer", "minimum": 1},
                "comparison": {
                    "type": "string",
                    "enum": ["greater", "greater_or_equal", "less", "less_or_equal"],
                },
                "description": {"type": "string"},
            },
        ),
    ),
    "bucket": ResourceTypeSpec(
        description="Object storage bucket",
        immutable=frozenset({"name"}),
        schema=_object(
            ["name"],
            {
                "name": {"type": "string"},
                "versioned": {"type": "boolean"},
                "encryption": {"type": "string", "enum": ["none", "managed", "kms"]},
            },
        ),
    ),
    "iam-role": ResourceTypeSpec(
        description="Identity assumed by compute resources",
        immutable=frozenset({"name", "assumed_by"}),
        schema=_object(
            ["name", "assumed_by"],
            {
                "name": {"type": "string"},
                "assumed_by": {"type": "string"},
                "managed_policies": _STRING_LIST,
            },
        ),
    ),
}

# Short prefixes for generated identifiers
ID_PREFIXES = {
    "network": "net",
    "subnet": "subnet",
    "security-group": "sg",
    "compute-instance": "i",
    "managed-database": "db",
    "secret": "secret",
    "alarm": "alarm",
    "bucket": "bucket",
    "iam-role": "role",
}


def _host_number(provider_id: str) -> int:
    # Identifiers end in a hex suffix; see SimulatedProvider._new_id.
    return int(provider_id.rsplit("-", 1)[-1][:4], 16)


def _network(pid: str, props: Dict[str, Any]) -> Dict[str, Any]:
    return {"cidr_block": props.get("cidr")}


def _subnet(pid: str, props: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "cidr_block": props.get("cidr"),
        "availability_zone": props.get("availability_zone", "zone-a"),
    }


def _instance(pid: str, props: Dict[str, Any]) -> Dict[str, Any]:
    n = _host_number(pid)
    outputs = {"private_ip": f"10.{(n >> 8) % 256}.{n % 256}.{n % 250 + 4}"}
    if props.get("public_ip"):
        outputs["public_ip"] = f"203.0.113.{n % 254 + 1}"
    return outputs


def _database(pid: str, props: Dict[str, Any]) -> Dict[str, Any]:
    port = 5432 if props.get("engine") == "postgres" else 3306
    host = f"{pid}.cluster.internal"
    return {
        "endpoint": {"address": host, "port": port},
        "reader_endpoint": {"address": f"{pid}.cluster-ro.internal", "port": port},
        "port": port,
    }


def _arn(kind: str) -> Callable[[str, Dict[str, Any]], Dict[str, Any]]:
    def outputs(pid: str, props: Dict[str, Any]) -> Dict[str, Any]:
        return {"arn": f"sim:{kind}:{pid}"}

    return outputs


def _bucket(pid: str, props: Dict[str, Any]) -> Dict[str, Any]:
    name = props.get("name")
    return {"arn": f"sim:bucket:{name}", "domain_name": f"{name}.storage.internal"}


OUTPUTS: Dict[str, Callable[[str, Dict[str, Any]], Dict[str, Any]]] = {
    "network": _network,
    "subnet": _subnet,
    "security-group": _arn("security-group"),
    "compute-instance": _instance,
    "managed-database": _database,
    "secret": _arn("secret"),
    "alarm": _arn("alarm"),
    "bucket": _bucket,
    "iam-role": _arn("role"),
}
