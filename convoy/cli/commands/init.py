"""Topology scaffolding command."""

from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import Environment, PackageLoader, StrictUndefined

from ...extractor import DEFAULT_NETWORK, DEFAULT_OUTPUT

TEMPLATE_NAME = "convoy.yaml.j2"
TOPOLOGY_FILE = "convoy.yaml"

DEFAULT_IMAGES = {
    "starknet": "ghcr.io/dojoengine/dojo:v0.6.0-alpha.6",
    "deployer": "ghcr.io/kkrt-labs/kakarot/deployer:v0.7.4",
    "rpc": "ghcr.io/kkrt-labs/kakarot-rpc/node:latest",
    "apibara": "quay.io/apibara/starknet:1.4.1",
    "mongo": "mongo:6.0.8",
    "indexer": "quay.io/apibara/sink-mongo:0.7.0",
}


def _environment() -> Environment:
    return Environment(
        loader=PackageLoader("convoy.cli", "templates"),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
    )


def render_topology(
    directory: Path,
    network: str = DEFAULT_NETWORK,
    store: str = "deployments",
    **options: Any,
) -> str:
    """
    Render the kakarot devnet topology for ``directory``.

    Host paths handed to ``docker run -v`` are made absolute against
    ``directory``.
    """
    directory = Path(directory).resolve()
    context: Dict[str, Any] = {
        "network": network,
        "store": store,
        "store_path": str(directory / store),
        "indexer_path": str(directory / "indexer"),
        "output": DEFAULT_OUTPUT,
        "chain_id": "KKRT",
        "database": "kakarot-local",
        "docker_network": "convoy-devnet",
        "prefix": directory.name or "convoy",
        "gate_timeout": 300,
        "max_retries": None,
        "images": dict(DEFAULT_IMAGES),
    }
    context.update(options)
    return _environment().get_template(TEMPLATE_NAME).render(**context)


def create_topology(
    directory: Optional[str] = None,
    network: str = DEFAULT_NETWORK,
    force: bool = False,
) -> Path:
    """
    Write ``convoy.yaml`` and an empty artifact store into ``directory``.

    Raises:
        FileExistsError: If the topology file exists and ``force`` is not set
    """
    target = Path(directory) if directory else Path.cwd()
    path = target / TOPOLOGY_FILE
    if path.exists() and not force:
        raise FileExistsError(f"'{path}' already exists (use --force to overwrite)")

    target.mkdir(parents=True, exist_ok=True)
    (target / "deployments").mkdir(exist_ok=True)
    path.write_text(render_topology(target, network=network), encoding="utf-8")
    return path
