from typing import Any, Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel, to_snake


class JsonModel(BaseModel):
    """Wire model: camelCase on the way out, accepts either casing on the way in."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json(self, by_alias: bool = True, pretty: bool = False) -> str:
        return self.model_dump_json(indent=2 if pretty else None, exclude_none=True, by_alias=by_alias)

    def to_dict(
        self,
        by_alias: bool | None = None,
        include: set[str] | dict[str, Any] | None = None,
        exclude: set[str] | dict[str, Any] | None = None,
        mode: Literal["json", "python"] = "python",
    ) -> dict[str, Any]:
        return self.model_dump(
            exclude_none=True,
            by_alias=by_alias or (mode == "json"),
            include=include,
            exclude=exclude,
            mode=mode,
        )


class JsonSnakeCaseModel(JsonModel):
    model_config = ConfigDict(alias_generator=to_snake, populate_by_name=True, extra="ignore")
