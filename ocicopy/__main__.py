import logging
import logging.config

import click

from ocicopy.credentials import load_auths, resolve_credentials
from ocicopy.oci import Client, RegistryConfig, copy_image, copy_repositories
from ocicopy.oci.config import DEFAULT_TIMEOUT
from ocicopy.oci.coordinator import DEFAULT_MAX_WORKERS
from ocicopy.oci.errors import CopyError

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "default": {
            "formatter": "default",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
        },
    },
    "loggers": {
        "ocicopy": {"handlers": ["default"], "level": "INFO", "propagate": False},
        "httpx": {"handlers": ["default"], "level": "WARNING", "propagate": False},
    },
}


class Registries:
    def __init__(
        self,
        source: RegistryConfig,
        destination: RegistryConfig,
        debug: bool = False,
    ):
        logging.config.dictConfig(LOGGING_CONFIG)
        if debug:
            logging.getLogger("ocicopy").setLevel(logging.DEBUG)
            logging.getLogger("httpx").setLevel(logging.DEBUG)
        self.source = Client(source)
        self.destination = Client(destination)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.source.close()
        self.destination.close()


def _registry_config(url, username, password, insecure, timeout, auths):
    credentials = resolve_credentials(url, username, password, auths)
    return RegistryConfig(
        url=url,
        username=credentials.username,
        password=credentials.password,
        insecure=insecure,
        timeout=timeout,
    )


@click.group()
@click.option("--src", "source_url", help="URL of the source registry", required=True)
@click.option(
    "--dest", "dest_url", help="URL of the destination registry", required=True
)
@click.option("--src-username", help="Source registry username", default=None)
@click.option(
    "--src-password",
    help="Source registry password",
    default=None,
    envvar="OCICOPY_SRC_PASSWORD",
)
@click.option("--dest-username", help="Destination registry username", default=None)
@click.option(
    "--dest-password",
    help="Destination registry password",
    default=None,
    envvar="OCICOPY_DEST_PASSWORD",
)
@click.option("--insecure", help="Allow http and skip TLS checks", is_flag=True)
@click.option("--src-insecure", help="Same as --insecure, source only", is_flag=True)
@click.option(
    "--dest-insecure", help="Same as --insecure, destination only", is_flag=True
)
@click.option(
    "--timeout",
    help="Network timeout in seconds",
    type=float,
    default=DEFAULT_TIMEOUT,
    show_default=True,
)
@click.option("-d", "--debug", help="Debug output", is_flag=True)
@click.pass_context
def cli(
    ctx,
    source_url,
    dest_url,
    src_username,
    src_password,
    dest_username,
    dest_password,
    insecure,
    src_insecure,
    dest_insecure,
    timeout,
    debug,
):
    """Copy container images between registries."""
    auths = load_auths()
    ctx.obj = Registries(
        source=_registry_config(
            source_url,
            src_username,
            src_password,
            insecure or src_insecure,
            timeout,
            auths,
        ),
        destination=_registry_config(
            dest_url,
            dest_username,
            dest_password,
            insecure or dest_insecure,
            timeout,
            auths,
        ),
        debug=debug,
    )


@cli.command()
@click.option("--repo", help="Repository in the source and the destination")
@click.option(
    "--tag",
    help="Tag in the source and the destination",
    default="latest",
    show_default=True,
)
@click.option("--src-repo", help="Source repository, overrides --repo")
@click.option("--src-tag", help="Source tag or digest, overrides --tag")
@click.option("--dest-repo", help="Destination repository, overrides --repo")
@click.option("--dest-tag", help="Destination tag, overrides --tag")
@click.option(
    "-w",
    "--workers",
    help="Blobs to copy in parallel",
    type=click.IntRange(min=1),
    default=DEFAULT_MAX_WORKERS,
    show_default=True,
)
@click.pass_context
def copy(ctx, repo, tag, src_repo, src_tag, dest_repo, dest_tag, workers):
    """Copy a single image to the destination registry."""
    obj: Registries = ctx.ensure_object(Registries)
    source_name = src_repo or repo
    if not source_name:
        raise click.UsageError(
            "A source repository is required, use --src-repo or --repo"
        )
    source_tag = src_tag or tag
    dest_name = dest_repo or repo or source_name
    dest_tag = dest_tag or tag

    with obj as registries:
        try:
            outcome = copy_image(
                source=registries.source,
                destination=registries.destination,
                source_name=source_name,
                source_reference=source_tag,
                destination_name=dest_name,
                destination_reference=dest_tag,
                max_workers=workers,
            )
        except CopyError as e:
            click.echo(f"Failed to copy {source_name}:{source_tag}: {e}", err=True)
            ctx.exit(1)
    click.echo(
        f"Copied {source_name}:{source_tag} to {dest_name}:{dest_tag} successfully "
        f"({outcome.transferred} bytes transferred)."
    )


@cli.command()
@click.option(
    "-w",
    "--workers",
    help="Blobs to copy in parallel",
    type=click.IntRange(min=1),
    default=DEFAULT_MAX_WORKERS,
    show_default=True,
)
@click.pass_context
def sync(ctx, workers):
    """Copy every tag of every repository to the destination registry."""
    obj: Registries = ctx.ensure_object(Registries)
    with obj as registries:
        try:
            failures = copy_repositories(
                source=registries.source,
                destination=registries.destination,
                max_workers=workers,
            )
        except CopyError as e:
            click.echo(f"Failed to list the source registry: {e}", err=True)
            ctx.exit(1)
    for image, error in failures:
        click.echo(f"Failed to copy {image}: {error}", err=True)
    if failures:
        ctx.exit(1)
    click.echo("All images copied successfully.")


if __name__ == "__main__":
    cli()
