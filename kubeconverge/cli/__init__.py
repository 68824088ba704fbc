"""kubeconverge command-line interface.

Exposes:
    cli -- Click group entry point (registered as ``kubeconverge`` script).
"""

from kubeconverge.cli.main import cli

__all__ = ["cli"]
