"""Frame conversion at the public boundary.

The original data set, supplied bootstrap candidates and prediction
profiles may arrive as pandas or Polars frames.  patsy builds design
matrices from pandas only, so everything is converted once, on entry,
and the rest of the package sees ``pandas.DataFrame`` exclusively.

Polars is an optional extra.  Without it, pandas frames pass through
and anything else is rejected with a ``TypeError`` naming the argument.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, TypeAlias

import pandas as pd

if TYPE_CHECKING:
    import polars as pl

    DataFrameLike: TypeAlias = pd.DataFrame | pl.DataFrame | pl.LazyFrame
else:
    DataFrameLike: TypeAlias = pd.DataFrame

try:
    import polars as pl

    _HAS_POLARS = True
except ImportError:
    _HAS_POLARS = False


def _accepted_types() -> str:
    if _HAS_POLARS:
        return "a pandas DataFrame or Polars DataFrame/LazyFrame"
    return "a pandas DataFrame"


def _ensure_pandas_df(obj: DataFrameLike, *, name: str = "data") -> pd.DataFrame:
    """Return *obj* as a :class:`pandas.DataFrame`.

    pandas frames are returned as-is; the package never mutates its
    inputs, so no copy is taken.  Polars frames are converted with
    ``to_pandas()`` (a ``LazyFrame`` is collected first).

    Raises:
        TypeError: If *obj* is not a supported frame type.
    """
    if isinstance(obj, pd.DataFrame):
        return obj
    if _HAS_POLARS:
        if isinstance(obj, pl.LazyFrame):
            obj = obj.collect()
        if isinstance(obj, pl.DataFrame):
            return obj.to_pandas()
    msg = f"'{name}' must be {_accepted_types()}, got {type(obj).__name__}."
    raise TypeError(msg)


def _ensure_datasets(
    datasets: Iterable[DataFrameLike], *, name: str = "datasets"
) -> list[pd.DataFrame]:
    """Materialise a candidate supply as a list of pandas frames.

    Raises:
        TypeError: If *datasets* is a single frame rather than a
            sequence of them, or if any element is not a frame.
    """
    if isinstance(datasets, pd.DataFrame) or (
        _HAS_POLARS and isinstance(datasets, (pl.DataFrame, pl.LazyFrame))
    ):
        msg = f"'{name}' must be a sequence of data sets, not a single frame."
        raise TypeError(msg)
    return [
        _ensure_pandas_df(frame, name=f"{name}[{i}]")
        for i, frame in enumerate(datasets)
    ]
