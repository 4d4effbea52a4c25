# ─────────────────────────────────────────────────────────────────────────────
# Asset Paths: ordered fallback extraction from a world resource
# ─────────────────────────────────────────────────────────────────────────────
# The world service exposes the same logical asset at several paths and
# resolutions, and the schema has drifted between releases. Each asset kind
# is an ordered list of dotted paths; the first one that resolves to a
# non-null value wins. Lists can be overridden from Settings without
# touching orchestration code.
# ─────────────────────────────────────────────────────────────────────────────

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

Accessor = Callable[[Mapping[str, Any]], Any]

# Best quality first.
PRIMARY_ASSET_PATHS: tuple[str, ...] = (
    "assets.splats.spz_urls.full_res",
    "assets.splats.spz_urls.500k",
    "assets.splats.spz_urls.100k",
)

COLLIDER_PATHS: tuple[str, ...] = (
    "assets.meshes.glb_urls.collider",
    "assets.meshes.collider_glb_url",
    "assets.collider_mesh.url",
    "assets.collider.glb_url",
)

# Lighter splat for fast first paint in the viewer.
LOW_RES_PATHS: tuple[str, ...] = (
    "assets.splats.spz_urls.500k",
    "assets.splats.spz_urls.100k",
)


def path_accessor(path: str) -> Accessor:
    """Build an accessor that walks ``path`` (dot-separated) through nested dicts.

    Keys are taken literally, so ``spz_urls.500k`` looks up the "500k" key.
    Missing keys or non-dict intermediates resolve to None.
    """
    keys = path.split(".")

    def _get(data: Mapping[str, Any]) -> Any:
        node: Any = data
        for key in keys:
            if not isinstance(node, Mapping):
                return None
            node = node.get(key)
            if node is None:
                return None
        return node

    _get.__name__ = f"path:{path}"
    return _get


def first_present(data: Mapping[str, Any], accessors: Sequence[Accessor]) -> Any:
    """Return the first non-null, non-empty value produced by ``accessors``."""
    for accessor in accessors:
        value = accessor(data)
        if value is not None and value != "":
            return value
    return None


@dataclass(frozen=True)
class WorldAssets:
    world_url: str
    collider_mesh_url: str | None = None
    world_url_low_res: str | None = None


@dataclass
class AssetExtractor:
    """Holds the ordered accessor lists for each asset kind."""

    primary: list[Accessor] = field(default_factory=lambda: _accessors(PRIMARY_ASSET_PATHS))
    collider: list[Accessor] = field(default_factory=lambda: _accessors(COLLIDER_PATHS))
    low_res: list[Accessor] = field(default_factory=lambda: _accessors(LOW_RES_PATHS))

    @classmethod
    def from_paths(
        cls,
        primary: Sequence[str] | None = None,
        collider: Sequence[str] | None = None,
        low_res: Sequence[str] | None = None,
    ) -> "AssetExtractor":
        """Build from dotted-path lists; empty/None keeps the built-in list."""
        return cls(
            primary=_accessors(primary or PRIMARY_ASSET_PATHS),
            collider=_accessors(collider or COLLIDER_PATHS),
            low_res=_accessors(low_res or LOW_RES_PATHS),
        )

    def primary_url(self, world: Mapping[str, Any]) -> str | None:
        return first_present(world, self.primary)

    def extract(self, world: Mapping[str, Any]) -> WorldAssets | None:
        """Pull every asset kind; None when the primary asset is absent."""
        world_url = self.primary_url(world)
        if world_url is None:
            return None
        low_res = first_present(world, self.low_res)
        return WorldAssets(
            world_url=world_url,
            collider_mesh_url=first_present(world, self.collider),
            world_url_low_res=low_res if low_res != world_url else None,
        )


def _accessors(paths: Sequence[str]) -> list[Accessor]:
    return [path_accessor(p) for p in paths]
