"""Load-balancer address allocation and BGP announcement."""

__version__ = "0.1.0"