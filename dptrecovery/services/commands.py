from __future__ import annotations

import asyncio
from dataclasses import dataclass
import gzip
import json
import logging
import os
from pathlib import Path
import re
import shutil
import tempfile
from typing import Any, Mapping, Protocol, Sequence

from sqlalchemy.engine import make_url

from dptrecovery.core.config import get_settings
from dptrecovery.core.errors import (
    CommandError,
    ConfigurationError,
    InvalidDatabaseNameError,
    UploadError,
)


logger = logging.getLogger(__name__)


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")
_URL_PASSWORD_RE = re.compile(r":([^:@/]+)@")


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner(Protocol):
    # Narrow seam over external clients so tests and native drivers can substitute.
    async def run(
        self,
        command: str,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        stdin_path: Path | None = None,
    ) -> CommandResult:
        ...


def mask_secrets(text: str) -> str:
    # Keep connection passwords out of logs and error messages.
    return _URL_PASSWORD_RE.sub(":****@", text)


class SubprocessCommandRunner:
    async def run(
        self,
        command: str,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        stdin_path: Path | None = None,
    ) -> CommandResult:
        merged_env = {**os.environ, **env} if env else None
        logger.debug("command_start command=%s args=%s", command, mask_secrets(" ".join(args)))
        stdin_handle = stdin_path.open("rb") if stdin_path is not None else None
        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    command,
                    *args,
                    stdin=stdin_handle if stdin_handle is not None else asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=merged_env,
                )
            except FileNotFoundError as exc:
                raise CommandError(f"command not found: {command}", exit_code=127) from exc
            try:
                stdout, stderr = await proc.communicate()
            except asyncio.CancelledError:
                # Abandoned by a timeout or shutdown: do not leave the client running.
                if proc.returncode is None:
                    proc.kill()
                    logger.warning("command_killed command=%s pid=%s", command, proc.pid)
                raise
        finally:
            if stdin_handle is not None:
                stdin_handle.close()
        result = CommandResult(
            stdout=stdout.decode("utf-8", errors="ignore"),
            stderr=stderr.decode("utf-8", errors="ignore"),
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )
        logger.debug("command_finished command=%s exit_code=%s", command, result.exit_code)
        return result


def quote_identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name):
        raise InvalidDatabaseNameError(f"invalid database name: {name!r}")
    return f'"{name}"'


def _gunzip(source: Path, destination: Path) -> None:
    with gzip.open(source, "rb") as input_handle, destination.open("wb") as output_handle:
        shutil.copyfileobj(input_handle, output_handle)


class PostgresClient:
    """psql/pg_dump capability contract used by every DR component."""

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        database_url: str | None = None,
        maintenance_database: str | None = None,
        psql_path: str | None = None,
        pg_dump_path: str | None = None,
    ) -> None:
        settings = get_settings()
        self._runner = runner or SubprocessCommandRunner()
        self._database_url = database_url or settings.database_url
        self._maintenance_database = maintenance_database or settings.maintenance_database
        self._psql = psql_path or settings.psql_path
        self._pg_dump = pg_dump_path or settings.pg_dump_path

    @property
    def runner(self) -> CommandRunner:
        return self._runner

    @property
    def default_database(self) -> str:
        return make_url(self._database_url).database or self._maintenance_database

    def url_for(self, database: str | None = None) -> str:
        # Client tools only understand libpq URLs, so strip async driver suffixes.
        parsed = make_url(self._database_url)
        if "+" in parsed.drivername:
            parsed = parsed.set(drivername=parsed.drivername.split("+", 1)[0])
        if database is not None:
            parsed = parsed.set(database=database)
        return parsed.render_as_string(hide_password=False)

    async def _run_psql(self, database: str, args: Sequence[str]) -> CommandResult:
        result = await self._runner.run(self._psql, ["-X", "-d", self.url_for(database), *args])
        if not result.ok:
            raise CommandError(
                f"psql failed on {database}: {mask_secrets(result.stderr.strip()) or 'exit ' + str(result.exit_code)}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result

    async def scalar(self, database: str, sql: str) -> str:
        result = await self._run_psql(database, ["-t", "-A", "-q", "-v", "ON_ERROR_STOP=1", "-c", sql])
        return result.stdout.strip()

    async def scalar_int(self, database: str, sql: str) -> int:
        raw = await self.scalar(database, sql)
        first = raw.splitlines()[0].strip() if raw else ""
        try:
            return int(first)
        except ValueError as exc:
            raise CommandError(f"expected integer result, got {first!r}") from exc

    async def database_exists(self, name: str) -> bool:
        quote_identifier(name)
        raw = await self.scalar(
            self._maintenance_database, f"SELECT 1 FROM pg_database WHERE datname = '{name}';"
        )
        return raw == "1"

    async def create_database(self, name: str) -> None:
        await self.scalar(self._maintenance_database, f"CREATE DATABASE {quote_identifier(name)};")
        logger.info("database_created name=%s", name)

    async def drop_database(self, name: str) -> None:
        await self.scalar(self._maintenance_database, f"DROP DATABASE IF EXISTS {quote_identifier(name)};")
        logger.info("database_dropped name=%s", name)

    async def terminate_connections(self, name: str) -> int:
        quote_identifier(name)
        raw = await self.scalar(
            self._maintenance_database,
            "SELECT count(pg_terminate_backend(pid)) FROM pg_stat_activity "
            f"WHERE datname = '{name}' AND pid <> pg_backend_pid();",
        )
        try:
            return int(raw or 0)
        except ValueError:
            return 0

    async def is_replica(self, database: str) -> bool:
        return await self.scalar(database, "SELECT pg_is_in_recovery();") == "t"

    async def restore(self, dump_path: Path, database: str, *, verbose: bool = False) -> None:
        """Replay a plain SQL dump (optionally gzip-compressed) into ``database``."""
        quote_identifier(database)
        if dump_path.name.endswith(".gz"):
            with tempfile.TemporaryDirectory(prefix="dpt-gunzip-") as workdir:
                plain = Path(workdir) / dump_path.name[:-3]
                await asyncio.to_thread(_gunzip, dump_path, plain)
                await self._replay(plain, database, verbose)
            return
        await self._replay(dump_path, database, verbose)

    async def _replay(self, dump_path: Path, database: str, verbose: bool) -> None:
        args = ["-f", str(dump_path.resolve())]
        if not verbose:
            args.append("-q")
        result = await self._run_psql(database, args)
        if verbose and result.stdout:
            logger.info("restore_output database=%s\n%s", database, result.stdout)

    async def dump(
        self,
        output: Path,
        *,
        schema_only: bool = False,
        data_only: bool = False,
        tables: Sequence[str] = (),
    ) -> None:
        args = [
            "--format=plain",
            "--no-owner",
            "--no-acl",
            f"--file={output}",
        ]
        if schema_only:
            args.append("--schema-only")
        elif data_only:
            args.append("--data-only")
        args.extend(f"--table={table}" for table in tables)
        args.append(self.url_for(self.default_database))
        result = await self._runner.run(self._pg_dump, args)
        if not result.ok:
            raise CommandError(
                f"pg_dump failed: {mask_secrets(result.stderr.strip())}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )


class ObjectStorageClient:
    """aws CLI contract: upload with metadata, then confirm the object exists."""

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        bucket: str,
        region: str,
        endpoint: str,
        access_key_id: str,
        secret_access_key: str,
        aws_path: str = "aws",
    ) -> None:
        self._runner = runner or SubprocessCommandRunner()
        self.bucket = bucket
        self.region = region
        self.endpoint = endpoint
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._aws = aws_path

    @classmethod
    def from_settings(cls, runner: CommandRunner | None = None) -> ObjectStorageClient:
        settings = get_settings()
        errors = []
        if not settings.s3_bucket_name:
            errors.append("S3_BUCKET_NAME is required")
        if not settings.aws_access_key_id:
            errors.append("AWS_ACCESS_KEY_ID is required")
        if not settings.aws_secret_access_key:
            errors.append("AWS_SECRET_ACCESS_KEY is required")
        if errors:
            raise ConfigurationError("; ".join(errors))
        return cls(
            runner,
            bucket=settings.s3_bucket_name or "",
            region=settings.s3_region,
            endpoint=settings.s3_endpoint,
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            aws_path=settings.aws_cli_path,
        )

    def _env(self) -> dict[str, str]:
        return {
            "AWS_ACCESS_KEY_ID": self._access_key_id,
            "AWS_SECRET_ACCESS_KEY": self._secret_access_key,
            "AWS_DEFAULT_REGION": self.region,
        }

    def uri(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    async def upload(self, path: Path, key: str, metadata: Mapping[str, str]) -> None:
        args = [
            "s3",
            "cp",
            str(path),
            self.uri(key),
            "--region",
            self.region,
            "--endpoint-url",
            self.endpoint,
            "--metadata",
            json.dumps(dict(metadata), separators=(",", ":")),
            "--no-progress",
        ]
        result = await self._runner.run(self._aws, args, env=self._env())
        if not result.ok:
            message = result.stderr.strip() or result.stdout.strip() or f"exit {result.exit_code}"
            raise UploadError(f"upload to {self.uri(key)} failed: {message}", exit_code=result.exit_code, stderr=result.stderr)

    async def head_object(self, key: str) -> dict[str, Any] | None:
        """Remote object attributes, or None when the object cannot be confirmed."""
        args = [
            "s3api",
            "head-object",
            "--bucket",
            self.bucket,
            "--key",
            key,
            "--region",
            self.region,
            "--endpoint-url",
            self.endpoint,
        ]
        result = await self._runner.run(self._aws, args, env=self._env())
        if not result.ok:
            logger.warning("object_head_failed key=%s exit_code=%s", key, result.exit_code)
            return None
        try:
            payload = json.loads(result.stdout or "{}")
        except ValueError:
            payload = {}
        return payload if isinstance(payload, dict) else {}
