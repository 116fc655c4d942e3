"""Command line entry point - root command group with global options."""

import logging
import sys

import click

from snapship import __version__, configure_logging
from snapship.config import load_settings
from snapship.backup.compression import SUPPORTED_CODECS
from snapship.backup.executor import STAGE_ERRORS, BackupExecutor
from snapship.backup.sources import create_source
from snapship.backup.storage import S3Storage

logger = logging.getLogger(__name__)


@click.group()
@click.option('--env-file', type=click.Path(dir_okay=False), help='Path to a .env file (default: ./.env)')
@click.option('--endpoint', help='Object storage endpoint [OSS_ENDPOINT]')
@click.option('--access-key', help='Object storage access key [OSS_ACCESS_KEY]')
@click.option('--secret-key', help='Object storage secret key [OSS_SECRET_KEY]')
@click.option('--bucket', help='Object storage bucket [OSS_BUCKET]')
@click.option('--prefix', 'object_prefix', help='Object key prefix [OSS_OBJECT_PREFIX]')
@click.option('--region', help='Object storage region [OSS_REGION]')
@click.option('--compress', 'compress_method',
              help=f"Compression method: {', '.join(SUPPORTED_CODECS)} [COMPRESS_METHOD]")
@click.option('--verbose', '-v', is_flag=True, help='Show debug logging')
@click.option('--log-file', type=click.Path(dir_okay=False), help='Also write logs to a rotating file')
@click.version_option(version=__version__, prog_name='snapship')
@click.pass_context
def cli(ctx, env_file, endpoint, access_key, secret_key, bucket, object_prefix, region,
        compress_method, verbose, log_file):
    """snapship - back up directories, files and cluster snapshots to object storage.

    Every option can also be given through the environment or a .env file;
    the variable name is shown in brackets.

    Examples:
        # Back up two directories, skipping logs
        snapship dir --path /etc,/var/lib/app --exclude '*.log'

        # Take a Consul snapshot and store it uncompressed
        snapship --compress store consul --address http://10.0.0.5:8500
    """
    configure_logging(verbose=verbose, log_file=log_file)
    ctx.ensure_object(dict)
    ctx.obj['env_file'] = env_file
    ctx.obj['overrides'] = {
        'endpoint': endpoint,
        'access_key': access_key,
        'secret_key': secret_key,
        'bucket': bucket,
        'object_prefix': object_prefix,
        'region': region,
        'compress_method': compress_method,
    }


def _load_settings(ctx, **overrides):
    values = dict(ctx.obj['overrides'])
    values.update(overrides)
    return load_settings(values, env_file=ctx.obj['env_file'])


def _build_executor(settings) -> BackupExecutor:
    storage = S3Storage.from_settings(settings)
    return BackupExecutor(
        storage,
        codec=settings.codec,
        object_prefix=settings.object_prefix,
        temp_dir=settings.temp_dir,
    )


def _fail(error: Exception):
    logger.error(f"Backup failed: {error}")
    sys.exit(1)


def _finish(report):
    if not report.succeeded:
        sys.exit(1)
    click.echo(report.upload_key)


@cli.command('dir')
@click.option('--path', 'paths', help='Comma separated directories to back up [DIRS_TO_BACKUP]')
@click.option('--exclude', help='Comma separated exclusion patterns [EXCLUDE_PATTERNS]')
@click.pass_context
def backup_dirs(ctx, paths, exclude):
    """Archive and upload one or more directories.

    Each directory is archived and uploaded on its own; the command fails
    only when none of them could be backed up.
    """
    try:
        settings = _load_settings(ctx, dir_paths=paths, exclude_patterns=exclude)
        settings.validate_dirs()
        summary = _build_executor(settings).run_directories(
            list(settings.dir_paths), settings.exclude_patterns
        )
    except STAGE_ERRORS as e:
        _fail(e)

    for report in summary.reports:
        if report.succeeded:
            click.echo(report.upload_key)
    if summary.succeeded == 0:
        sys.exit(1)


@cli.command('file')
@click.option('--path', 'paths', help='Comma separated files to back up [FILES_TO_BACKUP]')
@click.pass_context
def backup_files(ctx, paths):
    """Compress and upload one file, or archive several files together."""
    try:
        settings = _load_settings(ctx, file_paths=paths)
        settings.validate_files()
        report = _build_executor(settings).run_files(list(settings.file_paths))
    except STAGE_ERRORS as e:
        _fail(e)

    _finish(report)


@cli.command('consul')
@click.option('--address', help='Consul HTTP address [CONSUL_ADDRESS]')
@click.option('--token', help='Consul ACL token [CONSUL_TOKEN]')
@click.option('--stale', is_flag=True, help='Allow a non-leader server to serve the snapshot [CONSUL_STALE]')
@click.pass_context
def backup_consul(ctx, address, token, stale):
    """Take, verify and upload a Consul snapshot."""
    try:
        settings = _load_settings(
            ctx, consul_address=address, consul_token=token, consul_stale=stale or None
        )
        settings.validate_destination()
        source = create_source('consul', settings)
        report = _build_executor(settings).run_snapshot(source)
    except STAGE_ERRORS as e:
        _fail(e)

    _finish(report)


@cli.command('etcd')
@click.option('--etcd-endpoints', help='etcd endpoint, exactly one [ETCD_ENDPOINTS]')
@click.option('--cacert', help='CA bundle for the etcd server [ETCD_CACERT]')
@click.option('--cert', help='Client certificate [ETCD_CERT]')
@click.option('--key', help='Client private key [ETCD_KEY]')
@click.option('--user', help='etcd user name [ETCD_USER]')
@click.option('--password', help='etcd password [ETCD_PASSWORD]')
@click.option('--dial-timeout', help='Connection timeout, e.g. 5s [ETCD_DIAL_TIMEOUT]')
@click.option('--command-timeout', help='Overall snapshot timeout, e.g. 2m [ETCD_COMMAND_TIMEOUT]')
@click.pass_context
def backup_etcd(ctx, etcd_endpoints, cacert, cert, key, user, password, dial_timeout, command_timeout):
    """Take, verify and upload an etcd snapshot."""
    try:
        settings = _load_settings(
            ctx,
            etcd_endpoints=etcd_endpoints,
            etcd_cacert=cacert,
            etcd_cert=cert,
            etcd_key=key,
            etcd_user=user,
            etcd_password=password,
            etcd_dial_timeout=dial_timeout,
            etcd_command_timeout=command_timeout,
        )
        settings.validate_destination()
        source = create_source('etcd', settings)
        report = _build_executor(settings).run_snapshot(source)
    except STAGE_ERRORS as e:
        _fail(e)

    _finish(report)


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
