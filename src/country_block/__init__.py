"""Country-based port blocking with ipset and iptables"""

__version__ = "0.1.0"
