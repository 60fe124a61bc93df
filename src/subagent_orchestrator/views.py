"""Rich views for roles, quality assessments and session snapshots."""

from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.table import Table

from .orchestrator.facade import ValidationResult
from .orchestrator.store import SessionSnapshot


def _score_style(score: float, threshold: float) -> str:
	if score >= threshold:
		return "green"
	if score >= threshold * 0.8:
		return "yellow"
	return "red"


def format_timestamp(iso_str: str) -> str:
	"""Format an ISO timestamp as relative time (e.g. '2m ago') or absolute."""
	try:
		total_secs = int((datetime.now() - datetime.fromisoformat(iso_str)).total_seconds())
	except (ValueError, TypeError):
		return str(iso_str)[:19]
	if total_secs < 0:
		return iso_str[:19]
	if total_secs < 60:
		return f"{total_secs}s ago"
	if total_secs < 3600:
		return f"{total_secs // 60}m ago"
	if total_secs < 86400:
		return f"{total_secs // 3600}h ago"
	return f"{total_secs // 86400}d ago"


def render_roles(roles: list[dict], console: Optional[Console] = None) -> None:
	"""Render a table of loaded roles."""
	console = console or Console()
	if not roles:
		console.print("[dim]No roles found.[/dim]")
		return

	table = Table(title=f"Roles ({len(roles)})")
	table.add_column("Name", style="cyan")
	table.add_column("Description")
	table.add_column("Tools")
	table.add_column("Threshold", justify="right")
	table.add_column("Source")

	for role in roles:
		table.add_row(
			role["name"],
			role["description"],
			", ".join(role["tools"]) or "-",
			f"{role['quality_threshold']:.2f}",
			role["source"],
		)

	console.print(table)


def render_assessment(result: ValidationResult, console: Optional[Console] = None) -> None:
	"""Render rule results, category scores and the refinement decision."""
	console = console or Console()
	assessment = result.assessment

	table = Table(title=f"Quality Assessment ({assessment.role or 'no role'})")
	table.add_column("Rule", style="cyan")
	table.add_column("Category")
	table.add_column("Score", justify="right")
	table.add_column("Severity")
	table.add_column("Feedback")

	for rule in assessment.rule_results:
		style = "green" if rule.passed else "red"
		table.add_row(
			rule.rule,
			rule.category,
			f"[{style}]{rule.score:.2f}[/{style}]",
			rule.severity.value,
			rule.feedback,
		)
	console.print(table)

	style = _score_style(assessment.overall_score, assessment.threshold)
	verdict = "[green]PASSED[/green]" if assessment.passed else "[red]FAILED[/red]"
	console.print(
		f"Overall: [{style}]{assessment.overall_score:.2f}[/{style}] "
		f"(threshold {assessment.threshold:.2f}, confidence {assessment.confidence}) {verdict}"
	)
	strategies = ", ".join(result.format_validation["strategies"])
	console.print(f"[dim]Parsed via: {strategies}[/dim]")

	for issue in assessment.critical_issues:
		console.print(f"[red]Critical:[/red] {issue}")

	prompt = result.refinement.get("prompt")
	if prompt:
		console.print()
		console.print("[bold]Refinement prompt[/bold]")
		console.print(prompt, markup=False)


def render_sessions(snapshots: list[SessionSnapshot], console: Optional[Console] = None) -> None:
	"""Render persisted session snapshots, newest first."""
	console = console or Console()
	if not snapshots:
		console.print("[dim]No sessions recorded. Set persist_sessions = true to record them.[/dim]")
		return

	table = Table(title=f"Sessions (last {len(snapshots)})")
	table.add_column("Session", style="cyan")
	table.add_column("Parent")
	table.add_column("Depth", justify="right")
	table.add_column("Calls", justify="right")
	table.add_column("Refinements", justify="right")
	table.add_column("Loop", justify="center")
	table.add_column("Updated")

	for snap in snapshots:
		refinements = sum(
			r.get("attempt_number", 0) for r in snap.state.get("refinements", {}).values()
		)
		loop = "[red]yes[/red]" if snap.state.get("loop_detected") else "-"
		table.add_row(
			snap.session_id,
			snap.parent_id or "-",
			str(snap.depth),
			str(snap.call_count),
			str(refinements),
			loop,
			format_timestamp(snap.updated_at),
		)

	console.print(table)
