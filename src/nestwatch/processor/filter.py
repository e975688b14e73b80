"""Area and spawnpoint limits applied to nests when loading."""

from dataclasses import dataclass

from nestwatch.config.models import FiltersConfig


@dataclass(frozen=True)
class NestFilter:
    min_spawnpoints: int = 0
    min_area_m2: float = 0.0
    max_area_m2: float = 0.0  # 0 disables

    @classmethod
    def from_config(cls, config: FiltersConfig) -> "NestFilter":
        return cls(
            min_spawnpoints=config.min_points,
            min_area_m2=config.min_area_m2,
            max_area_m2=config.max_area_m2,
        )

    def check_spawnpoints(self, spawnpoints: int) -> str | None:
        """Return why the spawnpoint count is rejected, or None."""
        if spawnpoints < self.min_spawnpoints:
            return f"spawnpoints {spawnpoints} < min_spawnpoints {self.min_spawnpoints}"
        return None

    def check_area(self, area: float) -> str | None:
        """Return why the area is rejected, or None."""
        if area < self.min_area_m2:
            return f"area {area:0.3f} < min_area {self.min_area_m2:0.3f}"
        if self.max_area_m2 > 0 and area > self.max_area_m2:
            return f"area {area:0.3f} > max_area {self.max_area_m2:0.3f}"
        return None
