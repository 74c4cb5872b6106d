"""Fit command implementation."""

from pathlib import Path
from typing import Optional

import typer

from ...api import fit_free_rates
from ...exceptions import HetsimError


def run_fit(
    alignment: Path,
    tree: Path,
    model: str,
    rates: str,
    algorithm: str,
    seqtype: str,
    sorted_rates: bool,
    checkpoint: Optional[Path],
    init_fewer: bool,
    ignore_errors: bool,
    maxiter: int,
    output: Optional[Path],
    format: str,
    verbose: bool,
    quiet: bool,
):
    """Fit a FreeRate model and report the result."""
    if not quiet:
        typer.echo(f"Fitting Model: {model}{rates}", err=True)
        typer.echo("=" * 70, err=True)
        typer.echo(f"Alignment: {alignment}", err=True)
        typer.echo(f"Tree:      {tree}", err=True)
        typer.echo(err=True)

    try:
        result = fit_free_rates(
            alignment,
            tree,
            model=model,
            rate_model=rates,
            algorithm=algorithm,
            checkpoint=checkpoint,
            init_from_fewer_categories=init_fewer,
            seqtype=seqtype,
            sorted_rates=sorted_rates,
            ignore_errors=ignore_errors,
            maxiter=maxiter,
            verbose=verbose,
        )
    except (HetsimError, ValueError, OSError) as e:
        typer.echo("Error: Model fitting failed", err=True)
        typer.echo(f"Details: {e}", err=True)
        raise typer.Exit(code=1)

    output_text = result.to_json() if format == "json" else result.summary()

    if output:
        if format == "json":
            result.to_json(output)
        else:
            output.write_text(output_text + "\n")
        if not quiet:
            typer.echo(f"\nResults written to {output}", err=True)
    else:
        typer.echo(output_text)
