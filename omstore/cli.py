import sys
from enum import Enum
from typing import Annotated, Literal, Optional, cast

import numpy as np
import typer

import omstore
from omstore.errors import OmStoreError
from omstore.indexing import SPATIAL_MAJOR, TEMPORAL_MAJOR, time_axis

app = typer.Typer()


def _set_logging_level(*, verbose: bool) -> None:
    if verbose:
        lvl = "INFO"
    else:
        lvl = "WARNING"
    omstore.set_log_level(cast(Literal["INFO", "WARNING"], lvl))
    omstore.set_format("%(message)s")


def _fail(e: Exception) -> None:
    typer.echo("error: %s" % e, err=True)
    raise typer.Exit(code=1)


def _parse_chunks(chunks: Optional[str]):
    if chunks is None:
        return None
    try:
        return tuple(int(c) for c in chunks.split(","))
    except ValueError:
        raise typer.BadParameter("expected comma separated integers, e.g. 1,721,1440")


class Layout(str, Enum):
    temporal = TEMPORAL_MAJOR
    spatial = SPATIAL_MAJOR


@app.command()  # type: ignore[misc]
def dump(
    path: Annotated[str, typer.Argument(help="Array file to describe.")],
) -> None:
    """Print the header information and structure of an array file."""
    try:
        with omstore.open_array(path) as z:
            typer.echo("File: %s" % path)
            typer.echo("=" * 41)
            typer.echo(repr(z.info), nl=False)
            typer.echo(str(z.tree()))
    except (OmStoreError, OSError) as e:
        _fail(e)


@app.command()  # type: ignore[misc]
def convert(
    source: Annotated[str, typer.Argument(help="Finalized array file to read.")],
    destination: Annotated[str, typer.Argument(help="Array file to create.")],
    chunks: Annotated[
        Optional[str],
        typer.Option(help="Destination chunk shape, comma separated; defaults to the source's."),
    ] = None,
    layout: Annotated[
        Layout,
        typer.Option(help="Physical axis order of the destination."),
    ] = Layout.spatial,
    compression: Annotated[
        Optional[str],
        typer.Option(help="Destination compression scheme; defaults to the source's."),
    ] = None,
    memory_budget: Annotated[
        Optional[int],
        typer.Option(help="Maximum number of elements buffered at once."),
    ] = None,
    overwrite: Annotated[
        bool,
        typer.Option(help="Replace the destination if it exists."),
    ] = False,
) -> None:
    """Rewrite an array file with a different chunk shape and axis order.

    An interrupted or failed conversion leaves the destination unfinalized;
    it cannot be opened and has to be converted again.
    """
    try:
        with omstore.open_array(source) as src:
            typer.echo("Input file info:")
            typer.echo("  compression: %s" % src.compression)
            typer.echo("  compression params: %s" % (src.compression_params,))
            typer.echo("  dimensions: %s" % (dict(src.dimensions),))
            typer.echo("  chunks: %s" % (src.chunks,))
            typer.echo("  layout: %s" % src.layout)

            with omstore.rechunk_to(src, destination, chunks=_parse_chunks(chunks),
                                    layout=layout.value, compression=compression,
                                    memory_budget=memory_budget, overwrite=overwrite) as dst:
                typer.echo("Wrote %s: chunks %s, %s" % (destination, dst.chunks, dst.layout))
    except (OmStoreError, OSError) as e:
        _fail(e)


@app.command("slice")  # type: ignore[misc]
def slice_(
    path: Annotated[str, typer.Argument(help="Array file to read.")],
    index: Annotated[int, typer.Option(help="Position along the sliced dimension.")],
    dimension: Annotated[
        Optional[str],
        typer.Option(help="Dimension to slice; defaults to the time dimension."),
    ] = None,
) -> None:
    """Print the values at one position of a dimension, e.g. one time step."""
    try:
        with omstore.open_array(path) as z:
            if dimension is None:
                axis = time_axis(z.names)
            elif dimension in z.names:
                axis = z.names.index(dimension)
            else:
                raise typer.BadParameter("no dimension %r in %s" % (dimension, z.names))

            start = [0] * z.ndim
            stop = list(z.shape)
            start[axis], stop[axis] = index, index + 1
            data = z.read_range(start, stop).squeeze(axis=axis)
    except (OmStoreError, OSError) as e:
        _fail(e)

    typer.echo("%s = %s" % (z.names[axis], index))
    if data.dtype.kind == "f" and np.all(np.isnan(data)):
        typer.echo("All values are nan")
        return
    with np.printoptions(threshold=sys.maxsize):
        typer.echo(str(data))
    typer.echo("min: %s max: %s" % (np.nanmin(data), np.nanmax(data)))


@app.callback()  # type: ignore[misc]
def main(
    verbose: Annotated[
        bool,
        typer.Option(help="enable verbose logging - reports conversion progress."),
    ] = False,
) -> None:
    """
    See available commands below - access help for individual commands with omstore COMMAND --help.
    """
    _set_logging_level(verbose=verbose)


if __name__ == "__main__":
    app()
