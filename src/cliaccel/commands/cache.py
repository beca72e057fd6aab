"""Cache commands -- inspect and maintain the persistent response cache.

Provides the ``cliaccel cache`` sub-command group. Only the disk tier
outlives a process, so these commands open the configured disk tier under
:func:`~cliaccel.config.get_cache_dir` and act on it.
"""

from __future__ import annotations

import typer

from cliaccel.exceptions import CliaccelError
from cliaccel.output import error, get_output, info, success


cache_app = typer.Typer(no_args_is_help=True)


def _open_store():  # noqa: ANN202
    from cliaccel.cache import CacheStore
    from cliaccel.config import get_cache_dir, resolve_config
    from cliaccel.models import Tier

    try:
        config = resolve_config()
    except CliaccelError as exc:
        error(str(exc))
        raise typer.Exit(code=exc.exit_code) from None
    disk_only = config.cache.model_copy(
        update={
            "enabled": True,
            "tiers": [t for t in config.cache.tiers if t.kind == Tier.DISK],
        }
    )
    store = CacheStore.from_config(disk_only, get_cache_dir())
    if not store.tiers:
        error("No disk cache tier is configured.")
        raise typer.Exit(code=3)
    return store


@cache_app.command("stats")
def cache_stats() -> None:
    """Show entry and eviction counts of the disk cache.

    Example::

        cliaccel cache stats
        cliaccel --json cache stats
    """
    from cliaccel.config import get_cache_dir

    store = _open_store()
    try:
        stats = store.stats()
    finally:
        store.close()
    info(f"Cache directory: {get_cache_dir()}")
    rows = [[t.tier.value, str(t.size), str(t.evictions)] for t in stats.tiers]
    get_output().print_table(["Tier", "Entries", "Evictions"], rows, title="Response cache")


@cache_app.command("clear")
def cache_clear(
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation."),
) -> None:
    """Remove every cached response.

    Example::

        cliaccel cache clear --force
    """
    if not force:
        confirmed = typer.confirm("Remove all cached responses?")
        if not confirmed:
            info("Cancelled.")
            raise typer.Exit()
    store = _open_store()
    try:
        store.clear()
    finally:
        store.close()
    success("Cache cleared.")


@cache_app.command("invalidate")
def cache_invalidate(
    pattern: str = typer.Argument(
        help="Glob over fingerprints, e.g. 'ec2:*' or 'iam:list-roles:*'."
    ),
) -> None:
    """Remove cached responses whose fingerprint matches PATTERN.

    Fingerprints look like ``service:operation:<sha256>``, so ``ec2:*``
    drops everything cached for a service.

    Example::

        cliaccel cache invalidate 'ec2:describe-*'
    """
    store = _open_store()
    try:
        removed = store.invalidate(pattern)
    finally:
        store.close()
    success(f"Removed {removed} cached responses matching {pattern}")
