"""CLI interface for tfxref."""
import io
import json
import sys
from pathlib import Path

import click
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import detector_options_from_config, linker_options_from_config, load_config
from .edges import FeedsIntoEdge, create_feeds_into_edge
from .infra import InfraLoader, load_workflow
from .linker import OperatesOnEdge, link_all_jobs_to_infrastructure
from .logging_config import setup_logging
from .models import InfraNode, TerraformToHelmFlow
from .orchestrator import DetectionResult, TfHelmDetector
from .pipeline import create_pipeline_nodes, generate_job_node_id

# Fix Windows console encoding issues
if sys.platform == "win32":
    sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
    sys.stderr = io.TextIOWrapper(sys.stderr.buffer, encoding="utf-8", errors="replace")

console = Console()

LOCAL_SCAN_ID = "local"


def get_confidence_color(confidence: float) -> str:
    """Return color based on flow confidence."""
    if confidence >= 80:
        return "green"
    elif confidence >= 50:
        return "yellow"
    return "red"


def get_pattern_display(pattern: str) -> str:
    """Return pattern display string with color."""
    pattern_map = {
        "direct_output": "[bold green]direct[/bold green]",
        "output_to_env": "[cyan]env[/cyan]",
        "output_to_file": "[blue]file[/blue]",
        "artifact_transfer": "[magenta]artifact[/magenta]",
    }
    return pattern_map.get(pattern, pattern)


def _find_output_node(flow: TerraformToHelmFlow, terraform_nodes: list[InfraNode]) -> InfraNode | None:
    candidates = [
        n for n in terraform_nodes
        if n.type == "terraform_output" and n.metadata.get("outputName") == flow.source.name
    ]
    working_dir = (flow.source.working_dir or "").strip("./")
    for node in candidates:
        if working_dir and node.metadata.get("modulePath", "").endswith(working_dir):
            return node
    return candidates[0] if candidates else None


def resolve_feeds_into_edges(
    flows: list[TerraformToHelmFlow],
    workflow_file: str,
    terraform_nodes: list[InfraNode],
    operates_on: list[OperatesOnEdge],
    scan_id: str = LOCAL_SCAN_ID,
) -> list[FeedsIntoEdge]:
    """FEEDS_INTO edges for flows whose output and Helm step both resolved to nodes."""
    edges = []
    for flow in flows:
        source = _find_output_node(flow, terraform_nodes)
        if source is None:
            continue
        job_id = generate_job_node_id(workflow_file, flow.target.job_id)
        linked = [
            e for e in operates_on
            if e.source_node_id == job_id
            and e.operation_type == "helm"
            and e.step_index == flow.target.step_index
        ]
        if not linked:
            continue
        target = max(linked, key=lambda e: e.confidence)
        edges.append(create_feeds_into_edge(flow, source.id, target.target_node_id, scan_id))
    return edges


def render_result(
    result: DetectionResult,
    operates_on: list[OperatesOnEdge],
    feeds_into: list[FeedsIntoEdge],
    verbose: bool = False,
) -> None:
    """Render detection result to console."""
    summary = result.summary
    avg_color = get_confidence_color(summary.average_confidence)

    console.print()
    console.print(Panel(
        f"[bold]Flows detected: {summary.total_flows}[/bold]\n\n"
        f"Average confidence: [bold {avg_color}]{summary.average_confidence}[/bold {avg_color}]  |  "
        f"High: {summary.flows_by_confidence['high']}  "
        f"Medium: {summary.flows_by_confidence['medium']}  "
        f"Low: {summary.flows_by_confidence['low']}\n"
        f"Terraform jobs: {summary.terraform_job_count}  |  Helm jobs: {summary.helm_job_count}",
        title="[bold white]tfxref Analysis[/bold white]",
        subtitle="[dim]Terraform to Helm Cross-Reference[/dim]",
        box=box.DOUBLE,
    ))

    for error in result.errors:
        console.print(f"[red]Error:[/red] {error.code}: {escape(error.message)}")

    if result.flows:
        console.print()
        table = Table(
            title="Flows",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("Output", style="white")
        table.add_column("Source Job")
        table.add_column("Helm Value", style="white")
        table.add_column("Target Job")
        table.add_column("Pattern", justify="center")
        table.add_column("Confidence", justify="center")

        for flow in result.flows:
            color = get_confidence_color(flow.confidence)
            table.add_row(
                escape(flow.source.name),
                escape(flow.source.job_id),
                escape(flow.target.path),
                escape(flow.target.job_id),
                get_pattern_display(flow.pattern),
                f"[{color}]{flow.confidence}[/{color}]",
            )
        console.print(table)

    if verbose and result.flows:
        console.print()
        console.print("[bold]Evidence:[/bold]")
        console.print()
        for flow in result.flows:
            console.print(f"[bold cyan]{escape(flow.source.name)} → {escape(flow.target.path)}[/bold cyan]")
            console.print(f"  [dim]chain: {escape(' → '.join(flow.workflow_context.job_chain))}[/dim]")
            for ev in flow.evidence:
                console.print(f"  [white]{ev.type}[/white] ({ev.strength:.0f})")
                console.print(f"     [dim]{escape(ev.description)}[/dim]")
                if ev.snippet:
                    console.print(f"     [dim italic]→ {escape(ev.snippet)}[/dim italic]")
            console.print()

    if result.warnings:
        console.print()
        for warning in result.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning.code}: {escape(warning.message)}")

    if operates_on:
        console.print()
        table = Table(
            title="Job Operations",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("Job Node", style="dim")
        table.add_column("Type", justify="center")
        table.add_column("Step", justify="center")
        table.add_column("Target Node", style="white")
        table.add_column("Reason")
        table.add_column("Confidence", justify="center")
        for edge in operates_on:
            color = get_confidence_color(edge.confidence)
            table.add_row(
                edge.source_node_id,
                edge.operation_type,
                str(edge.step_index),
                edge.target_node_id,
                edge.match_reason,
                f"[{color}]{edge.confidence}[/{color}]",
            )
        console.print(table)

    if feeds_into:
        console.print()
        console.print(f"[bold]FEEDS_INTO edges:[/bold] {len(feeds_into)}")
        for edge in feeds_into:
            console.print(
                f"  {escape(edge.metadata['sourceOutputName'])} → {escape(edge.metadata['targetValuePath'])} "
                f"[dim]({edge.source_node_id} → {edge.target_node_id})[/dim]"
            )


@click.command()
@click.argument("workflow", type=click.Path(exists=True, dir_okay=False))
@click.option("--infra", type=click.Path(exists=True, file_okay=False), help="Directory with .tf files and Helm charts")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="Path to tfxref.toml")
@click.option("--min-confidence", type=click.IntRange(0, 100), help="Drop flows below this confidence")
@click.option("--max-flows", type=click.IntRange(min=1), help="Maximum number of flows to report")
@click.option("-v", "--verbose", is_flag=True, help="Show evidence for each flow")
@click.option("-j", "--json", "output_json", is_flag=True, help="Output as JSON")
@click.option("-q", "--quiet", is_flag=True, help="Only output the flow count (for scripting)")
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(
    workflow: str,
    infra: str | None,
    config_path: str | None,
    min_confidence: int | None,
    max_flows: int | None,
    verbose: bool,
    output_json: bool,
    quiet: bool,
    debug: bool,
) -> None:
    """
    tfxref - Terraform to Helm Cross-Reference

    Finds where Terraform outputs feed Helm values inside a GitHub Actions
    or GitLab CI workflow.

    WORKFLOW is the workflow YAML file. With --infra, jobs are also linked
    to the Terraform outputs, modules and Helm charts found in that directory.

    \b
    Confidence Interpretation:
      80-100: High, explicit data path
      50-79:  Medium, indirect but supported
      0-49:   Low, heuristic only
    """
    setup_logging("DEBUG" if debug else None)
    workflow_path = Path(workflow)
    workflow_file = workflow_path.as_posix()

    try:
        config = load_config(config_path=Path(config_path) if config_path else None)
        options = detector_options_from_config(config)
        linker_options = linker_options_from_config(config)
        if min_confidence is not None:
            options.min_confidence = min_confidence
        if max_flows is not None:
            options.max_flows = max_flows
        if debug:
            options.debug = True

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            if not quiet and not output_json:
                progress.add_task("Analyzing workflow...", total=None)

            data = load_workflow(workflow_path)
            result = TfHelmDetector(options).detect_with_analysis(data, workflow_file)

            operates_on: list[OperatesOnEdge] = []
            feeds_into: list[FeedsIntoEdge] = []
            if infra:
                loader = InfraLoader(Path(infra))
                loader.load()
                graph = create_pipeline_nodes(data, workflow_file, LOCAL_SCAN_ID)
                operates_on = link_all_jobs_to_infrastructure(
                    graph.jobs, loader.terraform_nodes, loader.helm_nodes, linker_options
                )
                feeds_into = resolve_feeds_into_edges(
                    result.flows, workflow_file, loader.terraform_nodes, operates_on
                )

    except ValueError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise SystemExit(1) from e

    # Output based on format
    if quiet:
        print(result.summary.total_flows)
    elif output_json:
        output = result.to_dict()
        output["operatesOn"] = [e.to_dict() for e in operates_on]
        output["feedsInto"] = [e.to_dict() for e in feeds_into]
        print(json.dumps(output, indent=2))
    else:
        render_result(result, operates_on, feeds_into, verbose)

    if result.errors:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
