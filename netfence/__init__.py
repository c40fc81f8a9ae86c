"""nftables rule batches and saved firewall state for container networks."""

__version__ = "0.1.0"