"""Core."""

from .config import ServerConfig, flatten_config, load_config_from_file
from .models import Image, Instance, InstanceCredentials, WhitelistedAddress

__all__ = [
    "Image",
    "Instance",
    "InstanceCredentials",
    "ServerConfig",
    "WhitelistedAddress",
    "flatten_config",
    "load_config_from_file",
]
