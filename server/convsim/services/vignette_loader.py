"""Loads and caches vignette JSON files from convsim/vignettes/."""

import json
import logging
from pathlib import Path

from convsim.config import settings
from convsim.schemas.vignette import Vignette

logger = logging.getLogger(__name__)

# Module-level cache: {vignette_id: Vignette}
_vignette_cache: dict[str, Vignette] = {}

# Path to bundled vignettes (server/convsim/vignettes)
_VIGNETTES_DIR = Path(__file__).resolve().parents[1] / "vignettes"


def load_vignettes(vignettes_dir: Path | None = None) -> dict[str, Vignette]:
    """Read and validate every *.json file in the vignettes directory.

    A file that fails validation is a broken scenario: the error propagates
    so it is caught at authoring time, not mid-session.
    """
    global _vignette_cache

    if _vignette_cache:
        return _vignette_cache

    base = vignettes_dir or (Path(settings.vignettes_dir) if settings.vignettes_dir else _VIGNETTES_DIR)
    if not base.is_dir():
        logger.warning(f"Vignettes directory not found: {base}")
        return {}

    cache: dict[str, Vignette] = {}
    for path in sorted(base.glob("*.json")):
        data = json.loads(path.read_text(encoding="utf-8"))
        vignette = Vignette.model_validate(data)
        if vignette.id in cache:
            raise ValueError(f"Duplicate vignette id {vignette.id} in {path.name}")
        cache[vignette.id] = vignette
        logger.debug(f"Loaded vignette: {vignette.id} ({len(vignette.phases)} phases)")

    _vignette_cache = cache
    logger.info(f"Loaded {len(cache)} vignettes: {', '.join(cache.keys())}")
    return _vignette_cache


def get_vignette(vignette_id: str) -> Vignette | None:
    """Get one vignette by id. Loads cache if needed."""
    return load_vignettes().get(vignette_id)


def list_vignettes() -> list[Vignette]:
    return list(load_vignettes().values())


def clear_cache() -> None:
    """Clear the vignette cache (useful for testing)."""
    global _vignette_cache
    _vignette_cache = {}
