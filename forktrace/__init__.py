"""ForkTrace — replay Ethereum transactions on a local Anvil fork."""

__version__ = "1.0.0"
