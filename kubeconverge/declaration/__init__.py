"""Declaration documents: YAML/JSON files describing a stack."""

from kubeconverge.declaration.loader import config_env_name, load_declaration, parse_declaration

__all__ = ["config_env_name", "load_declaration", "parse_declaration"]
