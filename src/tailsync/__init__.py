"""tailsync: mirrors Tailscale devices into Argo CD cluster Secrets."""

__version__ = "0.1.0"
