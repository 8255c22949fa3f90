"""Command-line interface for dutystack."""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Callable, Optional, Tuple

import click

from ..config import get_settings
from ..errors import TariffEngineError
from ..tariff.engine import TariffEngine, build_engine
from ..tariff.optimizer import OptimizerRequest
from ..tariff.oracle import ClassificationHints

DATE_TYPE = click.DateTime(formats=["%Y-%m-%d"])


def _as_date(value: Optional[datetime]) -> Optional[date]:
    return value.date() if value else None


def _emit(ctx: click.Context, produce: Callable[[TariffEngine], Any]) -> None:
    """Run ``produce`` against the engine and print JSON; engine errors exit 1."""
    engine: TariffEngine = ctx.obj["engine_factory"]()
    try:
        payload = produce(engine)
    except TariffEngineError as exc:
        click.echo(json.dumps(exc.to_dict(), indent=2), err=True)
        ctx.exit(1)
    finally:
        engine.close()
    click.echo(json.dumps(payload, indent=2))


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Tariff resolution, landed cost and classification tools."""

    ctx.ensure_object(dict)
    ctx.obj.setdefault("engine_factory", lambda: build_engine(get_settings()))


@cli.command()
@click.argument("code")
@click.option("--country", "-c", required=True, help="ISO-2 country of origin.")
@click.option("--as-of", type=DATE_TYPE, default=None, help="Entry date (YYYY-MM-DD).")
@click.pass_context
def resolve(ctx: click.Context, code: str, country: str, as_of: Optional[datetime]) -> None:
    """Resolve the effective duty rate for CODE."""

    _emit(ctx, lambda engine: engine.resolve(code, country, _as_date(as_of)).to_dict())


@cli.command("landed-cost")
@click.argument("code")
@click.option("--country", "-c", required=True, help="ISO-2 country of origin.")
@click.option("--value", "product_value", type=float, required=True, help="Product value in USD.")
@click.option("--quantity", type=float, default=1.0, show_default=True)
@click.option("--shipping", type=float, default=0.0, show_default=True)
@click.option("--insurance", type=float, default=0.0, show_default=True)
@click.option("--ocean/--air", "is_ocean", default=True, show_default=True, help="Ocean shipments pay HMF.")
@click.option("--as-of", type=DATE_TYPE, default=None)
@click.pass_context
def landed_cost(
    ctx: click.Context,
    code: str,
    country: str,
    product_value: float,
    quantity: float,
    shipping: float,
    insurance: float,
    is_ocean: bool,
    as_of: Optional[datetime],
) -> None:
    """Total landed cost of importing CODE."""

    _emit(
        ctx,
        lambda engine: engine.landed_cost(
            code,
            country,
            product_value,
            quantity,
            shipping=shipping,
            insurance=insurance,
            is_ocean=is_ocean,
            as_of=_as_date(as_of),
        ).to_dict(),
    )


@cli.command()
@click.argument("description")
@click.option("--country", "-c", default=None, help="Country of origin; attaches duty estimates.")
@click.option("--material", default=None)
@click.option("--use", "intended_use", default=None, help="Intended use, e.g. household or commercial.")
@click.option("--unit-value", type=float, default=None)
@click.option("--as-of", type=DATE_TYPE, default=None)
@click.pass_context
def classify(
    ctx: click.Context,
    description: str,
    country: Optional[str],
    material: Optional[str],
    intended_use: Optional[str],
    unit_value: Optional[float],
    as_of: Optional[datetime],
) -> None:
    """Rank classification candidates for DESCRIPTION."""

    hints = ClassificationHints(
        material=material,
        intended_use=intended_use,
        country_of_origin=country,
        unit_value=unit_value,
    )
    _emit(ctx, lambda engine: engine.classify(description, hints, as_of=_as_date(as_of), record=False).to_dict())


@cli.command()
@click.argument("description")
@click.option("--country", "-c", required=True, help="ISO-2 country of origin.")
@click.option("--unit-value", type=float, default=None, help="Defaults to 100 USD.")
@click.option("--max-results", type=int, default=20, show_default=True)
@click.option("--material", default=None)
@click.option("--use", "intended_use", default=None)
@click.option("--as-of", type=DATE_TYPE, default=None)
@click.pass_context
def optimize(
    ctx: click.Context,
    description: str,
    country: str,
    unit_value: Optional[float],
    max_results: int,
    material: Optional[str],
    intended_use: Optional[str],
    as_of: Optional[datetime],
) -> None:
    """List applicable codes for DESCRIPTION ordered by landed cost."""

    request = OptimizerRequest(
        product_description=description,
        country_of_origin=country,
        unit_value=unit_value,
        max_results=max_results,
        material=material,
        intended_use=intended_use,
        as_of=_as_date(as_of),
    )
    _emit(ctx, lambda engine: engine.optimize(request).to_dict())


@cli.command()
@click.argument("code")
@click.option(
    "--country",
    "-c",
    "countries",
    multiple=True,
    help="Origin to price; repeat for each. Defaults to the usual sourcing shortlist.",
)
@click.option("--current", "current_origin", default=None, help="Origin sourced from today; savings are measured against it.")
@click.option("--value", "product_value", type=float, default=10000.0, show_default=True)
@click.option("--quantity", type=float, default=1.0, show_default=True)
@click.option("--shipping", type=float, default=0.0, show_default=True)
@click.option("--insurance", type=float, default=0.0, show_default=True)
@click.option("--ocean/--air", "is_ocean", default=True, show_default=True)
@click.option("--as-of", type=DATE_TYPE, default=None)
@click.pass_context
def compare(
    ctx: click.Context,
    code: str,
    countries: Tuple[str, ...],
    current_origin: Optional[str],
    product_value: float,
    quantity: float,
    shipping: float,
    insurance: float,
    is_ocean: bool,
    as_of: Optional[datetime],
) -> None:
    """Compare the landed cost of CODE across origins."""

    _emit(
        ctx,
        lambda engine: engine.compare_origins(
            code,
            list(countries),
            current_origin=current_origin,
            product_value=product_value,
            quantity=quantity,
            shipping=shipping,
            insurance=insurance,
            is_ocean=is_ocean,
            as_of=_as_date(as_of),
        ).to_dict(),
    )


@cli.command()
@click.argument("code")
@click.pass_context
def lookup(ctx: click.Context, code: str) -> None:
    """Show CODE with its ancestors and children."""

    _emit(ctx, lambda engine: engine.lookup(code))


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
def serve(host: str, port: int) -> None:
    """Run the HTTP API with uvicorn."""

    import uvicorn

    uvicorn.run("dutystack.api.app:app", host=host, port=port)


if __name__ == "__main__":
    cli()
