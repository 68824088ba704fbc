"""Entry point for `python -m kubeconverge`.

Usage:
    python -m kubeconverge up declarations/rebellion-cluster.yaml
"""

from __future__ import annotations

from kubeconverge.cli import cli

cli(prog_name="kubeconverge")
