"""Simulate command implementation."""

from pathlib import Path
from typing import List, Optional

import typer

from ...api import simulate_alignment, build_model
from ...exceptions import HetsimError
from ...simulate.output import SimulationOutput


def _parse_floats(text: Optional[str], what: str) -> Optional[List[float]]:
    if not text:
        return None
    try:
        return [float(v) for v in text.split(',')]
    except ValueError:
        typer.echo(f"Error: invalid {what}: {text}", err=True)
        raise typer.Exit(code=1)


def run_simulate(
    tree: Path,
    output: Path,
    length: int,
    model: str,
    components: List[str],
    weights: Optional[str],
    fused: bool,
    random_freqs: bool,
    rates: str,
    seqtype: str,
    seed: Optional[int],
    format: str,
    compress: bool,
    root_sequence: Optional[Path],
    partition_rate: float,
    fundi_taxa: Optional[str],
    fundi_proportion: float,
    ancestral: bool,
    site_annotation: bool,
    max_cache_categories: int,
    output_params: bool,
    verbose: bool,
    quiet: bool,
):
    """Simulate one alignment and write it (plus parameters) next to ``output``."""
    mixture_weights = _parse_floats(weights, "mixture weights")
    taxa = frozenset(t.strip() for t in fundi_taxa.split(',') if t.strip()) if fundi_taxa else frozenset()

    if not quiet:
        typer.echo("hetsim Sequence Simulator")
        typer.echo("=" * 50)
        typer.echo(f"  Tree: {tree}")
        if components:
            typer.echo(f"  Mixture: {', '.join(components)}{' (fused)' if fused else ''}")
        else:
            typer.echo(f"  Model: {model}")
        typer.echo(f"  Rate heterogeneity: {rates or 'none'}")
        typer.echo(f"  Sequence length: {length}")
        if seed is not None:
            typer.echo(f"  Seed: {seed}")

    try:
        sub_model = build_model(model, components=components, weights=mixture_weights,
                                fused=fused, seqtype=seqtype, random_freqs=random_freqs)
        result = simulate_alignment(
            tree,
            length,
            model=sub_model,
            rate_model=rates,
            seed=seed,
            output=output,
            root_sequence=root_sequence,
            seqtype=seqtype,
            partition_rate=partition_rate,
            max_rate_categories_for_caching=max_cache_categories,
            fundi_taxa=taxa,
            fundi_proportion=fundi_proportion,
            output_format=format,
            compress=compress,
            write_parameters=output_params,
            keep_ancestral=ancestral,
            verbose=verbose,
        )
    except (HetsimError, ValueError, OSError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    params_path = output.with_name(output.name + ".params.json")

    if site_annotation:
        annotation_path = output.with_name(output.name + ".sites.tsv")
        try:
            SimulationOutput.write_site_annotation(result.annotation, annotation_path)
        except HetsimError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(code=1)
        if not quiet:
            typer.echo(f"Site annotation -> {annotation_path}")

    if not quiet:
        typer.echo(f"Alignment -> {result.alignment_path}")
        if output_params:
            typer.echo(f"Parameters -> {params_path}")
        if ancestral:
            typer.echo(f"Ancestral sequences -> {output.with_name(output.name + '.anc.fa')}")
        typer.echo("\nSimulation complete!")
