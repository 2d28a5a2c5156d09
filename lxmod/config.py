"""Types for the configuration file of lxdump"""

from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field
import ruamel.yaml


_yaml = ruamel.yaml.YAML()


class YmlFileModel(BaseModel):
    @classmethod
    def from_file(cls, filename: Path):
        with filename.open("r") as f:
            return cls.model_validate(_yaml.load(f))

    @classmethod
    def from_str(cls, yaml: str):
        return cls.model_validate(_yaml.load(yaml))

    def write_file(self, filename: Path):
        with filename.open("w") as f:
            _yaml.dump(data=self.model_dump(mode="json"), stream=f)


class DecodeConfig(BaseModel):
    """Options for decoding a linear executable"""

    best_effort: bool = Field(
        default=False,
        validation_alias=AliasChoices("best-effort", "best_effort"),
    )
    # Number of threads used to decode fixup records. Unset means no pool.
    workers: Optional[int] = Field(default=None, ge=1)
    resolve_chains: bool = Field(
        default=False,
        validation_alias=AliasChoices("resolve-chains", "resolve_chains"),
    )

    @classmethod
    def default(cls) -> "DecodeConfig":
        return cls(best_effort=False, workers=None, resolve_chains=False)


class LxdumpFile(YmlFileModel):
    """File schema for lxdump.yml"""

    decode: DecodeConfig = Field(default_factory=DecodeConfig.default)
