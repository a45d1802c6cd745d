from __future__ import annotations

import asyncio
import logging
from datetime import datetime

import typer

from gamification_aggregates.cli.common import dumps, services_scope
from gamification_aggregates.query.builder import days_ago_expression, relative_date_expression
from gamification_aggregates.query.types import Granularity
from gamification_aggregates.services.models import CompanyFilter

app = typer.Typer(no_args_is_help=True, help="Query team, player and company aggregates.")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log diagnostics to stderr."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_instant(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise typer.BadParameter(f"Not an ISO-8601 instant: {value!r}") from e


@app.command("team-points")
def team_points_cmd(
    team: str = typer.Option(..., "--team", help="Team/department name (e.g. 'Departamento Pessoal')."),
    start: str = typer.Option(..., "--start", help="Window start, ISO-8601."),
    end: str = typer.Option(..., "--end", help="Window end, ISO-8601."),
) -> None:
    """Season points for a team: total, blocked and unlocked."""

    async def run() -> str:
        async with services_scope() as services:
            points = await services.teams.get_team_season_points(
                team, _parse_instant(start), _parse_instant(end)
            )
        return dumps(points)

    typer.echo(asyncio.run(run()))


@app.command("team-progress")
def team_progress_cmd(
    team: str = typer.Option(..., "--team", help="Team/department name."),
    start: str = typer.Option(..., "--start", help="Window start, ISO-8601."),
    end: str = typer.Option(..., "--end", help="Window end, ISO-8601."),
) -> None:
    """Progress counts for a team bucketed by action type."""

    async def run() -> str:
        async with services_scope() as services:
            metrics = await services.teams.get_team_progress_metrics(
                team, _parse_instant(start), _parse_instant(end)
            )
        return dumps(metrics)

    typer.echo(asyncio.run(run()))


@app.command("team-members")
def team_members_cmd(
    team: str = typer.Option(..., "--team", help="Team/department name."),
) -> None:
    """Distinct collaborators that logged actions for a team."""

    async def run() -> str:
        async with services_scope() as services:
            members = await services.teams.get_team_members(team)
        return dumps(members)

    typer.echo(asyncio.run(run()))


@app.command("team-graph")
def team_graph_cmd(
    team: str = typer.Option(..., "--team", help="Team/department name."),
    start: str = typer.Option(..., "--start", help="Window start, ISO-8601."),
    end: str = typer.Option(..., "--end", help="Window end, ISO-8601."),
    group_by: Granularity = typer.Option(Granularity.DAY, "--group-by", help="day or week."),
) -> None:
    """Zero-filled activity series per action id."""

    async def run() -> str:
        async with services_scope() as services:
            series = await services.teams.get_team_graph_data(
                team, _parse_instant(start), _parse_instant(end), group_by
            )
        return dumps(series)

    typer.echo(asyncio.run(run()))


@app.command("player-status")
def player_status_cmd(
    player: str = typer.Option(..., "--player", help="Player id (e-mail)."),
) -> None:
    """Level, point wallet and KPIs for one player."""

    async def run() -> str:
        async with services_scope() as services:
            status, points, kpis = await asyncio.gather(
                services.players.get_player_status(player),
                services.players.get_player_points(player),
                services.kpis.get_player_kpis(player),
            )
        return dumps({"status": status, "points": points, "kpis": kpis})

    typer.echo(asyncio.run(run()))


@app.command("companies")
def companies_cmd(
    player: str = typer.Option(..., "--player", help="Player id (e-mail)."),
    search: str | None = typer.Option(None, "--search", help="Name or CNPJ fragment."),
    min_health: float | None = typer.Option(None, "--min-health", help="Minimum health score."),
) -> None:
    """Company listing with health scores and KPIs."""

    async def run() -> str:
        async with services_scope() as services:
            companies = await services.company_lists.get_companies(
                player, CompanyFilter(search=search, min_health=min_health)
            )
        return dumps(companies)

    typer.echo(asyncio.run(run()))


@app.command("relative-date")
def relative_date_cmd(
    kind: str = typer.Argument(
        ...,
        help="currentMonthStart, currentMonthEnd, previousMonthStart, previousMonthEnd, today or daysAgo.",
    ),
    days: int = typer.Option(0, "--days", help="Days back, for daysAgo."),
) -> None:
    """Print the backend's relative date expression."""

    if kind == "daysAgo":
        typer.echo(days_ago_expression(days))
    else:
        typer.echo(relative_date_expression(kind))  # type: ignore[arg-type]
