import os
from typing import Optional

import typer
from loguru import logger
from rich import print

from model_config import ModelConfig, default_config
from model_errors import ModelError
from model_logging import setup_logging
from psa_runner import PSARunner

app = typer.Typer(help="Markov cohort PSA model")


# Function to sanitize filenames
def generate_safe_filename(name: str, suffix: str) -> str:
    replacements = {
        "<": "lt", ">": "gt", ":": "", '"': "",
        "/": "_", "\\": "_", "|": "_", "?": "",
        "*": "", " ": "_"
    }
    for old, new in replacements.items():
        name = name.replace(old, new)
    return f"{name}_{suffix}.csv"


def _load(config_path: Optional[str]) -> ModelConfig:
    return ModelConfig.load(config_path) if config_path else default_config()


@app.command()
def run(
    config: Optional[str] = typer.Option(None, help="YAML model configuration"),
    samples: Optional[int] = typer.Option(None, help="Number of PSA samples"),
    seed: Optional[int] = typer.Option(None, help="Random seed"),
    execution: Optional[str] = typer.Option(None, help="batched | sequential | parallel"),
    output: str = typer.Option("output", help="Directory for outcomes and config"),
    log_level: str = typer.Option("INFO"),
):
    """
    Run the probabilistic sensitivity analysis and save per-sample outcomes
    """
    setup_logging(log_level)
    try:
        cfg = _load(config).with_overrides(samples=samples, seed=seed, execution=execution)
        result = PSARunner(cfg).run()
    except ModelError as exc:
        logger.error(str(exc))
        raise typer.Exit(code=1)

    print(f"\n--- Strategy: {result.name} ---")
    summary = result.summary()
    print(f"  Mean QALYs: {summary.loc['QALY', 'mean']:.3f} "
          f"(95% {summary.loc['QALY', 'lower']:.3f} to {summary.loc['QALY', 'upper']:.3f})")
    print(f"  Mean Costs: ${summary.loc['Cost', 'mean']:,.2f} "
          f"(95% ${summary.loc['Cost', 'lower']:,.2f} to ${summary.loc['Cost', 'upper']:,.2f})")
    if result.failures:
        print(f"[yellow]  Skipped samples: {len(result.failures)}[/yellow]")

    result.save(output)
    print(f"Saved: {output}")


@app.command("base-case")
def base_case(
    config: Optional[str] = typer.Option(None, help="YAML model configuration"),
    output: str = typer.Option(".", help="Directory for the per-cycle CSV"),
    log_level: str = typer.Option("INFO"),
):
    """
    Run the model once at the prior means and save the per-cycle results
    """
    setup_logging(log_level)
    try:
        cfg = _load(config)
        outcome, annual = PSARunner(cfg).base_case()
    except ModelError as exc:
        logger.error(str(exc))
        raise typer.Exit(code=1)

    print(f"\n--- Strategy: {cfg.name} (base case) ---")
    print(f"  Total QALYs: {outcome.effect:.2f}")
    print(f"  Total Costs: ${outcome.cost:.2f}")

    os.makedirs(output, exist_ok=True)
    filename = os.path.join(output, generate_safe_filename(cfg.name, "Cycles"))
    annual.to_csv(filename, index=False)
    print(f"Saved: {filename}")


if __name__ == "__main__":
    app()
