# loader.py
from __future__ import annotations

import json
import runpy
from pathlib import Path

from .errors import DefinitionError
from .ingest import pipeline_from_mapping
from .model import Pipeline


def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline definition.

    Supported files:
      - .py   defining `definition() -> Pipeline` or `PIPELINE = Pipeline(...)`
      - .json a deserialized definition (see stageci.ingest)
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")

    if p.suffix == ".json":
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise DefinitionError(f"{p.name} is not valid JSON: {e}") from e
        return pipeline_from_mapping(data)

    if p.suffix != ".py":
        raise ValueError(f"Pipeline must be a .py or .json file, got: {p.name}")

    module_name = f"stageci_pipeline_{p.stem}"
    globals_dict = runpy.run_path(str(p), run_name=module_name)

    result = None
    if "definition" in globals_dict and callable(globals_dict["definition"]):
        result = globals_dict["definition"]()
    elif "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]

    if not isinstance(result, Pipeline):
        raise TypeError(
            "Pipeline file must return/define a Pipeline. "
            "Define definition() -> Pipeline or PIPELINE = pipeline(...)."
        )
    return result
