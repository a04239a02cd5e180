from .json_export import build_dashboard, write_artifacts, write_json

__all__ = ["build_dashboard", "write_artifacts", "write_json"]
