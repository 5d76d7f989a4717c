"""Boot-time provisioning for EC2 web instances."""

__version__ = "0.1.0"
