"""signpass command line interface."""

import json
import logging
import sys
import traceback
from pathlib import Path

import click

from . import __version__
from .digest import DEFAULT_ALGORITHM, SUPPORTED_ALGORITHMS
from .engine import SignOptions, VerifyOptions, sign, verify
from .providers import load_credentials, load_trust_context
from .summary import format_report


def handle_error(error: Exception, debug: bool) -> None:
    """Print an error (or its traceback in debug mode) and exit 1."""
    if debug:
        traceback.print_exc()
    else:
        click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="signpass")
@click.option('--verbose', '-v', is_flag=True, help='Log progress to stderr')
@click.option('--debug', is_flag=True, help='Enable debug mode (debug logs and full tracebacks)')
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool):
    """Sign and verify manifest-based file bundles."""
    ctx.ensure_object(dict)
    ctx.obj['debug'] = debug

    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@cli.command('sign')
@click.option(
    '--pass', '-p', 'pass_path', required=True,
    type=click.Path(exists=True, path_type=Path),
    help='Bundle directory or zip archive to sign',
)
@click.option('--out', '-o', required=True, type=click.Path(path_type=Path), help='Output path')
@click.option(
    '--key', '-k', required=True, envvar='SIGNPASS_KEY',
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help='PEM private key (env: SIGNPASS_KEY)',
)
@click.option(
    '--chain', '-c', required=True, envvar='SIGNPASS_CHAIN',
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help='PEM certificate chain, signer first (env: SIGNPASS_CHAIN)',
)
@click.option('--password', envvar='SIGNPASS_KEY_PASSWORD', default=None, help='Private key password (env: SIGNPASS_KEY_PASSWORD)')
@click.option('--zip/--no-zip', 'as_archive', default=False, help='Write a zip archive instead of a directory')
@click.option('--force', is_flag=True, help='Replace an existing output')
@click.option('--algorithm', type=click.Choice(SUPPORTED_ALGORITHMS), default=DEFAULT_ALGORITHM, show_default=True)
@click.option('--workers', type=click.IntRange(min=1), default=1, show_default=True, help='Digest worker threads')
@click.pass_context
def sign_command(
    ctx: click.Context,
    pass_path: Path,
    out: Path,
    key: Path,
    chain: Path,
    password: str | None,
    as_archive: bool,
    force: bool,
    algorithm: str,
    workers: int,
):
    """Sign a bundle.

    Examples:
      signpass sign -p ./MyPass.pass -o ./MyPass.pkpass --zip -k key.pem -c chain.pem
    """
    debug = ctx.obj.get('debug', False)

    try:
        credentials = load_credentials(key, chain, password)
        options = SignOptions(
            algorithm=algorithm,
            as_archive=as_archive,
            overwrite=force,
            max_workers=workers,
        )
        result = sign(pass_path, out, credentials, options)
        click.echo(f"Signed {len(result.manifest)} files as {result.signer_identity}")
        click.echo(f"Wrote {'archive' if as_archive else 'directory'}: {result.destination}")
    except Exception as e:
        handle_error(e, debug)


@cli.command('verify')
@click.option(
    '--pass', '-p', 'pass_path', required=True,
    type=click.Path(exists=True, path_type=Path),
    help='Signed bundle directory or zip archive',
)
@click.option(
    '--anchor', '-a', 'anchors', multiple=True, required=True,
    envvar='SIGNPASS_ANCHORS',
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help='PEM file of trusted root certificates (repeatable, env: SIGNPASS_ANCHORS)',
)
@click.option(
    '--intermediate', '-i', 'intermediates', multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help='Extra intermediate certificates (repeatable)',
)
@click.option(
    '--crl', 'crls', multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help='Certificate revocation list (repeatable)',
)
@click.option('--check-revocation', is_flag=True, help='Require CRLs for every certificate on the path')
@click.option('--json', 'as_json', is_flag=True, help='Print the report as JSON')
@click.option('--workers', type=click.IntRange(min=1), default=1, show_default=True, help='Digest worker threads')
@click.pass_context
def verify_command(
    ctx: click.Context,
    pass_path: Path,
    anchors: tuple[Path, ...],
    intermediates: tuple[Path, ...],
    crls: tuple[Path, ...],
    check_revocation: bool,
    as_json: bool,
    workers: int,
):
    """Verify a signed bundle.

    Exits with status 0 when the bundle is accepted, 1 otherwise.

    Examples:
      signpass verify -p ./MyPass.pkpass -a roots.pem
      signpass verify -p ./MyPass.pkpass -a roots.pem --crl ca.crl --check-revocation --json
    """
    debug = ctx.obj.get('debug', False)

    try:
        trust = load_trust_context(anchors, intermediates, crls, check_revocation)
        report = verify(pass_path, trust, VerifyOptions(max_workers=workers))
    except Exception as e:
        handle_error(e, debug)
        return

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2, sort_keys=True))
    else:
        click.echo(format_report(report))

    sys.exit(0 if report.accepted else 1)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
