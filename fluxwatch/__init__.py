"""FluxWatch: discovers Flux nodes on a LAN and removes stuck apps per node."""

__version__ = "1.2.0"
