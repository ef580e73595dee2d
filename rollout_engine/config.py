import ipaddress
import json
from dataclasses import dataclass, field

from .errors import ConfigError
from .logger import get_logger

TRANSPORTS = ("local", "ssh")

# JSON key -> RolloutConfig attribute
_KEYS = {
    "Concurrency": "concurrency",
    "CanaryNum": "canary_num",
    "MaxFailures": "max_failures",
    "Src": "src",
    "Dst": "dst",
    "LB": "lb",
    "Pattern": "pattern",
    "Backends": "backends",
    "Transport": "transport",
}

_SSH_KEYS = {
    "User": "ssh_user",
    "Port": "ssh_port",
    "IdentityFile": "ssh_identity_file",
}


def check_ip_port(address):
    """Split an "ip:port" string and verify both halves.

    IPv6 addresses must be bracketed ("[::1]:8080"). Returns (ip, port)
    with the IP in its normalised text form.
    """
    if not isinstance(address, str):
        raise ConfigError(f"address {address!r} is not a string")
    host, sep, port_str = address.rpartition(":")
    if not sep or not host:
        raise ConfigError(f"address {address!r} is not in host:port form")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ConfigError(f"address {address!r} has too many colons, bracket IPv6 hosts")

    try:
        ip = ipaddress.ip_address(host)
    except ValueError as e:
        raise ConfigError(f"address {address!r} does not have a valid IP: {e}") from e

    if not (port_str.isascii() and port_str.isdigit()):
        raise ConfigError(f"address {address!r} does not have a numeric port")
    port = int(port_str)
    if port < 1 or port > 65534:
        raise ConfigError(f"invalid port: {port}")
    return str(ip), port


def _check_int(name, value, minimum):
    # bool is an int subclass, "Concurrency": true is still a mistake
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name}({value!r}) must be an integer")
    if value < minimum:
        raise ConfigError(f"{name}({value}) is invalid")


@dataclass
class RolloutConfig:
    """Describes a rollout: what to push, where, and how carefully"""
    src: str  # Local path of the binary to push
    lb: str  # ip:port of the load balancer control plane
    pattern: str  # Load balancer pool the backends belong to
    backends: list = field(default_factory=list)  # ip:port of every endpoint to upgrade
    concurrency: int = 1  # How many endpoints to upgrade at once after the canaries
    canary_num: int = 0  # Endpoints upgraded one at a time before everything else
    max_failures: int = 0  # Bulk failures tolerated before admissions stop
    dst: str = None  # Path on the endpoint, discovered from /installedAt when unset
    transport: str = "local"
    ssh_user: str = None
    ssh_port: int = 22
    ssh_identity_file: str = None

    @classmethod
    def from_dict(cls, data):
        logger = get_logger("config")
        if not isinstance(data, dict):
            raise ConfigError("config must be a JSON object")

        kwargs = {}
        for key, value in data.items():
            if key == "SSH":
                if not isinstance(value, dict):
                    raise ConfigError("SSH must be a JSON object")
                for ssh_key, ssh_value in value.items():
                    if ssh_key not in _SSH_KEYS:
                        logger.warning(f"Ignoring unknown config key SSH.{ssh_key}")
                        continue
                    kwargs[_SSH_KEYS[ssh_key]] = ssh_value
            elif key in _KEYS:
                kwargs[_KEYS[key]] = value
            else:
                logger.warning(f"Ignoring unknown config key {key}")

        missing = [k for k in ("Src", "LB", "Pattern") if _KEYS[k] not in kwargs]
        if missing:
            raise ConfigError(f"config is missing required keys: {', '.join(missing)}")
        return cls(**kwargs)

    def validate(self):
        """Basic sanity checks, raises ConfigError on the first problem found"""
        try:
            check_ip_port(self.lb)
        except ConfigError as e:
            raise ConfigError(f"LB({self.lb}) is not correct: {e}") from e

        if not isinstance(self.backends, list) or len(self.backends) < 1:
            raise ConfigError("must specify some Backends")
        for b in self.backends:
            try:
                check_ip_port(b)
            except ConfigError as e:
                raise ConfigError(f"Backend({b}) is not correct: {e}") from e

        if not isinstance(self.pattern, str) or self.pattern.strip() == "":
            raise ConfigError(f"Pattern({self.pattern!r}) is invalid")
        if not isinstance(self.src, str) or self.src.strip() == "":
            raise ConfigError(f"Src({self.src!r}) is invalid")
        if self.dst is not None and (not isinstance(self.dst, str) or self.dst.strip() == ""):
            raise ConfigError(f"Dst({self.dst!r}) is invalid")

        _check_int("Concurrency", self.concurrency, 1)
        _check_int("CanaryNum", self.canary_num, 0)
        _check_int("MaxFailures", self.max_failures, 0)

        if self.transport not in TRANSPORTS:
            raise ConfigError(f"Transport({self.transport!r}) must be one of {', '.join(TRANSPORTS)}")
        if self.transport == "ssh":
            _check_int("SSH.Port", self.ssh_port, 1)


def load_config(path):
    """Read, decode and validate a JSON rollout config file"""
    with open(path) as f:
        data = json.load(f)
    config = RolloutConfig.from_dict(data)
    config.validate()
    return config
