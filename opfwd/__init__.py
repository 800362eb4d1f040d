"""opfwd: forward whitelisted 1Password CLI commands over a Unix domain socket."""

__version__ = "0.1.0"
