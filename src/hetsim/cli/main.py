"""Main CLI application for hetsim."""

import typer
from pathlib import Path
from typing import List, Optional
from enum import Enum

app = typer.Typer(
    name="hetsim",
    help="Simulate sequence evolution under site-heterogeneous models and fit FreeRate models",
    no_args_is_help=True,
)


class AlignmentFormat(str, Enum):
    """Alignment output format."""
    PHYLIP = "phylip"
    FASTA = "fasta"


class SeqType(str, Enum):
    """Sequence data type."""
    DNA = "dna"
    AA = "aa"
    BIN = "bin"


class OutputFormat(str, Enum):
    """Fit result format."""
    TEXT = "text"
    JSON = "json"


@app.command()
def simulate(
    tree: Path = typer.Option(
        ...,
        "--tree", "-t",
        help="Tree file (Newick format with branch lengths; a/b/c lengths for heterotachy)",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    output: Path = typer.Option(
        ...,
        "--output", "-o",
        help="Output base name (.phy/.fa is appended)",
    ),
    length: int = typer.Option(
        1000,
        "--length", "-l",
        help="Sequence length (number of sites)",
        min=1,
    ),
    model: str = typer.Option(
        "JC",
        "--model", "-m",
        help="Substitution model: JC, POISSON, HKY{kappa} or GTR{ac,ag,at,cg,ct,gt}",
    ),
    components: Optional[List[str]] = typer.Option(
        None,
        "--component", "-c",
        help="Mixture component model (repeat for each component)",
    ),
    weights: Optional[str] = typer.Option(
        None,
        "--weights",
        help="Comma-separated mixture weights (default: equal)",
    ),
    fused: bool = typer.Option(
        False,
        "--fused",
        help="Tie mixture components to rate categories",
    ),
    random_freqs: bool = typer.Option(
        False,
        "--random-freqs",
        help="Draw random state frequencies for each mixture component",
    ),
    rates: str = typer.Option(
        "",
        "--rates", "-r",
        help="Rate heterogeneity, e.g. '+G4{0.5}', '+I{0.2}+R3{...}', '+GC{1.0}', '+H2'",
    ),
    seqtype: SeqType = typer.Option(
        SeqType.DNA,
        "--seqtype",
        help="Sequence type",
    ),
    seed: Optional[int] = typer.Option(
        None,
        "--seed",
        help="Random seed for reproducibility",
    ),
    format: AlignmentFormat = typer.Option(
        AlignmentFormat.PHYLIP,
        "--format",
        help="Alignment format",
    ),
    compress: bool = typer.Option(
        False,
        "--compress", "-z",
        help="gzip the alignment",
    ),
    root_sequence: Optional[Path] = typer.Option(
        None,
        "--root-sequence",
        help="Alignment file whose first sequence is used at the root",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    partition_rate: float = typer.Option(
        1.0,
        "--partition-rate",
        help="Overall rate multiplier",
        min=0.0,
    ),
    fundi_taxa: Optional[str] = typer.Option(
        None,
        "--fundi-taxa",
        help="Comma-separated taxa whose FunDi sites are permuted",
    ),
    fundi_proportion: float = typer.Option(
        0.0,
        "--fundi-proportion",
        help="Fraction of sites permuted in FunDi taxa",
        min=0.0,
        max=1.0,
    ),
    ancestral: bool = typer.Option(
        False,
        "--ancestral",
        help="Also write internal node sequences (FASTA)",
    ),
    site_annotation: bool = typer.Option(
        False,
        "--site-annotation",
        help="Write the model component and rate of every site",
    ),
    max_cache_categories: int = typer.Option(
        100,
        "--max-cache-categories",
        help="Cache transition matrices for at most this many rate categories",
        min=0,
    ),
    output_params: bool = typer.Option(
        True,
        "--output-params/--no-output-params",
        help="Write parameters to JSON file",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Show simulation progress",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet", "-q",
        help="Suppress progress messages",
    ),
):
    """
    Simulate an alignment along a tree.

    Example:
        hetsim simulate -t tree.nwk -o sim -l 1000 -m 'HKY{2.0}' -r '+I{0.2}+G4{0.5}' --seed 1
        hetsim simulate -t tree.nwk -o sim -c 'JC' -c 'HKY{4}' --fused -r '+R2{0.6,0.5,0.4,1.75}'
    """
    from .commands.simulate import run_simulate

    run_simulate(
        tree=tree,
        output=output,
        length=length,
        model=model,
        components=components or [],
        weights=weights,
        fused=fused,
        random_freqs=random_freqs,
        rates=rates,
        seqtype=seqtype.value,
        seed=seed,
        format=format.value,
        compress=compress,
        root_sequence=root_sequence,
        partition_rate=partition_rate,
        fundi_taxa=fundi_taxa,
        fundi_proportion=fundi_proportion,
        ancestral=ancestral,
        site_annotation=site_annotation,
        max_cache_categories=max_cache_categories,
        output_params=output_params,
        verbose=verbose,
        quiet=quiet,
    )


@app.command()
def fit(
    alignment: Path = typer.Option(
        ...,
        "--alignment", "-s",
        help="Alignment file (FASTA or PHYLIP)",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    tree: Path = typer.Option(
        ...,
        "--tree", "-t",
        help="Tree file (Newick format with branch lengths)",
        exists=True,
        file_okay=True,
        dir_okay=False,
    ),
    model: str = typer.Option(
        "JC",
        "--model", "-m",
        help="Substitution model (kept fixed)",
    ),
    rates: str = typer.Option(
        "+R4",
        "--rates", "-r",
        help="FreeRate model, e.g. '+R4' or '+I+R3'",
    ),
    algorithm: str = typer.Option(
        "EM",
        "--algorithm", "-a",
        help="EM, 2-BFGS or 1-BFGS",
    ),
    seqtype: SeqType = typer.Option(
        SeqType.DNA,
        "--seqtype",
        help="Sequence type",
    ),
    sorted_rates: bool = typer.Option(
        False,
        "--sorted-rates",
        help="Keep category rates in increasing order",
    ),
    checkpoint: Optional[Path] = typer.Option(
        None,
        "--checkpoint",
        help="Checkpoint file to save (and with --init-fewer, read) parameters",
    ),
    init_fewer: bool = typer.Option(
        False,
        "--init-fewer",
        help="Start from the checkpointed model with one category fewer",
    ),
    ignore_errors: bool = typer.Option(
        False,
        "--ignore-errors",
        help="Warn instead of failing when an EM step lowers the likelihood",
    ),
    maxiter: int = typer.Option(
        200,
        "--maxiter",
        help="Maximum iterations per gradient phase",
        min=1,
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output", "-o",
        help="Output file (default: stdout)",
    ),
    format: OutputFormat = typer.Option(
        OutputFormat.TEXT,
        "--format",
        help="Output format",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Show optimization progress",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet", "-q",
        help="Minimal output",
    ),
):
    """
    Fit FreeRate category proportions and rates on a fixed tree.

    Example:
        hetsim fit -s alignment.phy -t tree.nwk -r '+R3'
        hetsim fit -s alignment.phy -t tree.nwk -r '+R4' --checkpoint fit.ckp --init-fewer
    """
    from .commands.fit import run_fit

    run_fit(
        alignment=alignment,
        tree=tree,
        model=model,
        rates=rates,
        algorithm=algorithm,
        seqtype=seqtype.value,
        sorted_rates=sorted_rates,
        checkpoint=checkpoint,
        init_fewer=init_fewer,
        ignore_errors=ignore_errors,
        maxiter=maxiter,
        output=output,
        format=format.value,
        verbose=verbose,
        quiet=quiet,
    )


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
