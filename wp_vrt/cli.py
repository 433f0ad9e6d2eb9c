#!/usr/bin/env python3
"""
Command-line entry point for wp_vrt.

Commands:
  run        Run a VRT batch over the configured sites
  discover   Discover and list the pages of one site
  diff       Compare two PNG files
  config     Show the resolved configuration
  recommend  Suggest concurrency settings for this host

Common options:
  --config PATH       Path to the YAML/JSON config (default: configs/default.yaml)
  --log-level LEVEL   Logging level (DEBUG, INFO, ...)
  --log-file PATH     Log file (stdout only if omitted)
  --log-format FORMAT Logging format string

run options:
  --sites IDS         Comma-separated site ids or "all"
  --mode MODE         baseline | after | compare | full
  --auto-update       Apply updates between baseline and after captures
  --rollback-on-critical
                      Roll back sites with a critical regression
  --notify-on-success Send the webhook notification even without NG results
  --max-sites N       Site-level concurrency override
  --max-pages N       Page-level concurrency override
  --date YYYYMMDD     Run date used in artifact keys (default: today)
  --json PATH         Save the JSON report
  --html PATH         Save the HTML report
  --template DIR      Jinja2 template directory
  --pretty            Indent JSON written to stdout

Example:
  wp-vrt --config configs/default.yaml run --sites blog,shop --mode full --json out/batch.json
"""
import asyncio
import json
import sys
from pathlib import Path

import click

from wp_vrt import __version__
from wp_vrt.concurrency import recommended_settings
from wp_vrt.config import load_config
from wp_vrt.diff import DiffEngine
from wp_vrt.engine import Engine
from wp_vrt.errors import ConfigError
from wp_vrt.logger import init_logging
from wp_vrt.models import Mode
from wp_vrt.pipeline import today
from wp_vrt.report.html_report import render_html
from wp_vrt.report.json_report import render_json

CONTEXT_SETTINGS = dict(help_option_names=["--help"])


def print_error(message: str):
    click.secho(message, fg='red', err=True)
    sys.exit(1)


def _load(ctx):
    """Load the config once per invocation; exit 1 on any config error."""
    if 'config' not in ctx.obj:
        try:
            ctx.obj['config'] = load_config(ctx.obj['config_path'])
        except Exception as e:
            print_error(f'Failed to load configuration: {e}')
    return ctx.obj['config']


@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(__version__, '--version', '-v', message='wp_vrt, version %(version)s')
@click.option(
    '--config', '-c', 'config_path',
    default='configs/default.yaml',
    show_default=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help='Path to the configuration file.'
)
@click.option(
    '--log-level', 'log_level',
    default='INFO', show_default=True,
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']),
    help='Logging level'
)
@click.option(
    '--log-file', 'log_file',
    default=None,
    type=click.Path(writable=True, dir_okay=False, path_type=Path),
    help='Log file (stdout if omitted)'
)
@click.option(
    '--log-format', 'log_format',
    default='%(asctime)s %(levelname)s %(message)s',
    show_default=True,
    help='Logging format string'
)
@click.pass_context
def cli(ctx, config_path, log_level, log_file, log_format):
    """wp_vrt: visual regression testing for WordPress sites."""
    init_logging(
        level=log_level,
        log_file=str(log_file) if log_file else None,
        log_format=log_format
    )
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path


@cli.command('run', context_settings=CONTEXT_SETTINGS)
@click.option('--sites', '-s', 'sites', default='all', show_default=True,
              help='Comma-separated site ids or "all"')
@click.option('--mode', '-m', 'mode', default='full', show_default=True,
              type=click.Choice([m.value for m in Mode]), help='Pipeline mode')
@click.option('--auto-update', is_flag=True, help='Apply updates before the after capture')
@click.option('--rollback-on-critical', is_flag=True, help='Roll back on critical regression')
@click.option('--notify-on-success', is_flag=True, help='Notify even when everything is OK')
@click.option('--max-sites', type=click.IntRange(min=1), default=None, help='Site concurrency override')
@click.option('--max-pages', type=click.IntRange(min=1), default=None, help='Page concurrency override')
@click.option('--date', 'run_date', default=None, help='Run date for artifact keys (YYYYMMDD)')
@click.option(
    '--json', '-j', 'json_output',
    default=None,
    type=click.Path(writable=True, dir_okay=False, path_type=Path),
    help='Save the JSON report'
)
@click.option(
    '--html', '-h', 'html_output',
    default=None,
    type=click.Path(writable=True, dir_okay=False, path_type=Path),
    help='Save the HTML report'
)
@click.option(
    '--template', '-t', 'template_dir',
    default='templates',
    show_default=True,
    type=click.Path(file_okay=False, path_type=Path),
    help='Jinja2 template directory'
)
@click.option('--pretty', is_flag=True, help='Indent JSON written to stdout')
@click.pass_context
def run(ctx, sites, mode, auto_update, rollback_on_critical, notify_on_success,
        max_sites, max_pages, run_date, json_output, html_output, template_dir, pretty):
    """Run a VRT batch and report the summary."""
    cfg = _load(ctx)
    engine = Engine(cfg)
    selection = 'all' if sites == 'all' else [s.strip() for s in sites.split(',') if s.strip()]
    try:
        engine.select_sites(selection)
    except ConfigError as e:
        print_error(str(e))

    click.echo(f'Starting {mode} run for {sites}', err=True)
    try:
        batch = asyncio.run(engine.run(
            selection,
            mode,
            auto_update=auto_update,
            rollback_on_critical=rollback_on_critical,
            notify_on_success=notify_on_success,
            max_concurrent_sites=max_sites,
            max_concurrent_pages=max_pages,
            run_date=run_date or today(),
        ))
    except Exception as e:
        print_error(f'Batch failed: {e}')

    if not json_output and not html_output:
        click.echo(json.dumps(batch.to_dict(), ensure_ascii=False, indent=2 if pretty else None))
        return

    click.echo(json.dumps(batch.summary.to_dict(), ensure_ascii=False))
    if json_output:
        try:
            saved_json = render_json(batch, json_output)
            click.echo(f'JSON report: {saved_json}')
        except Exception as e:
            print_error(f'Failed to save JSON report: {e}')

    if html_output:
        try:
            saved_html = render_html(
                batch, template_dir, html_output, artifact_root=engine.config.storage.root
            )
            click.echo(f'HTML report: {saved_html}')
        except Exception as e:
            print_error(f'Failed to save HTML report: {e}')


@cli.command('discover', context_settings=CONTEXT_SETTINGS)
@click.argument('site_id')
@click.pass_context
def discover(ctx, site_id):
    """Discover pages of SITE_ID and print them, one per line."""
    engine = Engine(_load(ctx))
    try:
        pages = asyncio.run(engine.discover(site_id))
    except ConfigError as e:
        print_error(str(e))
    for page in pages:
        suffix = f'  [{page.error}]' if page.error else ''
        click.echo(f'{page.depth}\t{page.page_id}\t{page.url}{suffix}')


@cli.command('diff', context_settings=CONTEXT_SETTINGS)
@click.argument('baseline', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument('after', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--threshold', type=float, default=None, help='NG threshold in percent')
@click.option('--out', '-o', 'out', default=None,
              type=click.Path(writable=True, dir_okay=False, path_type=Path),
              help='Write the diff image here')
def diff(baseline, after, threshold, out):
    """Compare two PNG files and print the result as JSON."""
    result, _, _ = DiffEngine().compare_files(baseline, after, threshold)
    if out is not None and result.diff_image is not None:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(result.diff_image)
    click.echo(json.dumps(result.to_dict(), ensure_ascii=False))


@cli.command('config', context_settings=CONTEXT_SETTINGS)
@click.pass_context
def show_config(ctx):
    """Show the resolved configuration as JSON."""
    cfg = _load(ctx)
    click.echo(cfg.model_dump_json(indent=2))


@cli.command('recommend', context_settings=CONTEXT_SETTINGS)
def recommend():
    """Print concurrency settings suggested for this host."""
    click.echo(json.dumps(recommended_settings(), indent=2))


if __name__ == "__main__":
    cli()
