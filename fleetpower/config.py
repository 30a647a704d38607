"""Controller configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Controller settings loaded from environment variables."""

    # Controller identity
    controller_id: str = ""  # Auto-generated if not set

    # Inventory file (YAML) describing managed nodes
    inventory_path: str = "fleet.yaml"

    # Loop periods (seconds)
    update_interval: int = 30  # liveness detection
    reconcile_interval: int = 10  # desired/current convergence
    system_check_interval: int = 300  # resource sampling over SSH
    init_check_interval: int = 3600  # periodic re-initialization age
    vm_discovery_interval: int = 300  # hypervisor guest discovery

    # Remote shell defaults
    ssh_connect_timeout: float = 10.0
    ssh_default_user: str = "root"
    ssh_default_port: int = 22
    ssh_default_key_path: str = ""

    # Hypervisor management API
    hypervisor_port: int = 8006
    hypervisor_timeout: float = 30.0
    hypervisor_verify_tls: bool = False
    hypervisor_token_user: str = "root"

    # Liveness probing timeouts (seconds)
    liveness_timeout: float = 5.0
    quick_scan_timeout: float = 1.0
    service_scan_timeout: float = 3.0
    discovery_scan_timeout: float = 2.0

    # Sweep well-known ports of online nodes for unconfigured services
    service_discovery: bool = True

    # Fixed wait after waking a parent before acting on its child
    parent_settle_delay: float = 5.0
    hypervisor_settle_delay: float = 10.0

    # State-change notification queue
    update_queue_size: int = 100

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"

    # Prometheus exporter port (0 disables)
    metrics_port: int = 0

    class Config:
        env_prefix = "FLEETPOWER_"


settings = Settings()
