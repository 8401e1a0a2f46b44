import yaml
from pathlib import Path
from .models import AppConfig

def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    # Older configs kept the bucket/profile under 'aws'
    aws = data.pop("aws", None)
    if isinstance(aws, dict) and "storage" not in data:
        data["storage"] = aws

    return AppConfig(**data)
