"""
Convoy CLI.

Usage:
    convoy init [DIR]
    convoy validate -f convoy.yaml
    convoy graph -f convoy.yaml --dot
    convoy extract --store ./deployments --network katana
    convoy up -f convoy.yaml
"""

from .. import __version__

__cli_name__ = "convoy"


def main():
    """Wrapper to avoid eager import of __main__ which causes warnings with -m."""
    from .__main__ import main as _main
    return _main()
