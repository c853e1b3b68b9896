"""Provider profiles: per-cloud naming and replacement rules.

A profile maps provider-neutral resource types (instance, bucket, ...) to the
provider's native types, lists the attributes that cannot change without
replacing the resource, and supplies the id prefix the simulated executor
uses. Profiles are selected by the ``provider`` setting.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# Attributes that force replacement regardless of resource type
_LOCATION_ATTRIBUTES = frozenset({"region", "location", "zone", "availability_zone"})


@dataclass(frozen=True)
class ProviderProfile:
    """Immutable description of one cloud provider.

    Attributes:
        name: Profile name (aws, azure, gcp).
        native_types: Provider-neutral type -> provider-native type.
        immutable_attributes: Provider-neutral type -> attributes that force replacement.
        id_prefixes: Provider-neutral type -> prefix for generated resource ids.
    """

    name: str
    native_types: dict[str, str]
    immutable_attributes: dict[str, frozenset[str]]
    id_prefixes: dict[str, str] = field(default_factory=dict)

    def native_type(self, resource_type: str) -> str:
        """Return the provider-native type, falling back to ``{name}_{type}``."""
        return self.native_types.get(resource_type, f"{self.name}_{resource_type}")

    def replacement_attributes(self, resource_type: str) -> frozenset[str]:
        """Return the attributes that force replacement for a resource type."""
        return self.immutable_attributes.get(resource_type, frozenset()) | _LOCATION_ATTRIBUTES

    def id_prefix(self, resource_type: str) -> str:
        return self.id_prefixes.get(resource_type, resource_type.replace("_", "-"))


# ---------------------------------------------------------------------------
# Built-in profiles
# ---------------------------------------------------------------------------

AWS_PROFILE = ProviderProfile(
    name="aws",
    native_types={
        "vpc": "aws_vpc",
        "subnet": "aws_subnet",
        "security_group": "aws_security_group",
        "instance": "aws_instance",
        "bucket": "aws_s3_bucket",
        "database": "aws_db_instance",
        "volume": "aws_ebs_volume",
        "load_balancer": "aws_lb",
        "listener": "aws_lb_listener",
        "dns_record": "aws_route53_record",
        "queue": "aws_sqs_queue",
    },
    immutable_attributes={
        "vpc": frozenset({"cidr_block"}),
        "subnet": frozenset({"cidr_block", "vpc"}),
        "security_group": frozenset({"vpc", "name"}),
        "instance": frozenset({"image", "subnet"}),
        "bucket": frozenset({"bucket_name"}),
        "database": frozenset({"engine", "storage_encrypted"}),
        "volume": frozenset({"encrypted", "snapshot_id"}),
        "load_balancer": frozenset({"internal", "load_balancer_type"}),
        "dns_record": frozenset({"zone_id", "record_name"}),
    },
    id_prefixes={
        "vpc": "vpc",
        "subnet": "subnet",
        "security_group": "sg",
        "instance": "i",
        "bucket": "s3",
        "database": "db",
        "volume": "vol",
        "load_balancer": "alb",
        "listener": "lsnr",
    },
)

AZURE_PROFILE = ProviderProfile(
    name="azure",
    native_types={
        "vpc": "azurerm_virtual_network",
        "subnet": "azurerm_subnet",
        "security_group": "azurerm_network_security_group",
        "instance": "azurerm_linux_virtual_machine",
        "bucket": "azurerm_storage_container",
        "database": "azurerm_postgresql_flexible_server",
        "volume": "azurerm_managed_disk",
        "load_balancer": "azurerm_application_gateway",
        "listener": "azurerm_application_gateway_listener",
        "dns_record": "azurerm_dns_a_record",
        "queue": "azurerm_servicebus_queue",
    },
    immutable_attributes={
        "vpc": frozenset({"address_space"}),
        "subnet": frozenset({"address_prefixes", "vpc"}),
        "instance": frozenset({"image", "subnet", "admin_username"}),
        "bucket": frozenset({"bucket_name", "storage_account"}),
        "database": frozenset({"engine", "storage_encrypted"}),
        "volume": frozenset({"encrypted"}),
    },
    id_prefixes={"instance": "vm", "bucket": "sc", "vpc": "vnet", "security_group": "nsg"},
)

GCP_PROFILE = ProviderProfile(
    name="gcp",
    native_types={
        "vpc": "google_compute_network",
        "subnet": "google_compute_subnetwork",
        "security_group": "google_compute_firewall",
        "instance": "google_compute_instance",
        "bucket": "google_storage_bucket",
        "database": "google_sql_database_instance",
        "volume": "google_compute_disk",
        "load_balancer": "google_compute_url_map",
        "listener": "google_compute_target_https_proxy",
        "dns_record": "google_dns_record_set",
        "queue": "google_pubsub_topic",
    },
    immutable_attributes={
        "vpc": frozenset({"auto_create_subnetworks"}),
        "subnet": frozenset({"ip_cidr_range", "vpc"}),
        "instance": frozenset({"image", "subnet", "machine_image"}),
        "bucket": frozenset({"bucket_name"}),
        "database": frozenset({"engine", "storage_encrypted"}),
        "volume": frozenset({"encrypted", "snapshot_id"}),
    },
    id_prefixes={"instance": "gce", "bucket": "gcs", "vpc": "net", "security_group": "fw"},
)

PROFILES: dict[str, ProviderProfile] = {
    profile.name: profile for profile in (AWS_PROFILE, AZURE_PROFILE, GCP_PROFILE)
}
