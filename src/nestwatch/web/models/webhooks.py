"""Inbound scanner webhook models."""

from pydantic import BaseModel, ConfigDict


class PokemonWebhook(BaseModel):
    """The parts of a "pokemon" webhook message nest detection needs."""

    model_config = ConfigDict(extra="ignore")

    pokemon_id: int
    latitude: float
    longitude: float
    form: int | None = None
    spawnpoint_id: str | None = None
    encounter_id: str | None = None
    individual_attack: int | None = None

    def spawnpoint_id_as_int(self) -> int | None:
        """Parse the hex spawnpoint id.

        Returns:
            The id, or None for lured pokemon (no spawnpoint).

        Raises:
            ValueError: If the id is present but not hex
        """
        if self.spawnpoint_id in (None, "", "None"):
            return None
        return int(self.spawnpoint_id, 16)
