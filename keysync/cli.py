from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Awaitable, Callable

import typer

from keysync.common.run_id import generate_run_id
from keysync.common.sanitize import maskSecret
from keysync.common.time import getDurationMs
from keysync.config import Settings, load_settings
from keysync.domain.exceptions import KeyBlockParseError, KeyStoreError, RemoteUnavailableError
from keysync.domain.keys.adapter import to_key_object
from keysync.domain.models import KeyType
from keysync.domain.reporting.collector import ReportCollector
from keysync.infra.artifacts.report_writer import createEmptyReport, finalizeReport, writeReportJson
from keysync.infra.codec.json_key_codec import JsonKeyBlockCodec
from keysync.infra.http.directory_client import ApiError, DirectoryApiClient
from keysync.infra.http.directory_provider import HttpDirectoryKeyProvider
from keysync.infra.realms import StaticRealmLookup
from keysync.infra.store.db import openKeyringDb
from keysync.infra.store.schema import ensure_keyring_schema
from keysync.infra.store.sqlite_key_store import SqliteKeyStore
from keysync.loggingSetup import closeCommandLogger, createCommandLogger, logEvent
from keysync.usecases.keyring_service import ReconcilingKeyRing

app = typer.Typer(no_args_is_help=True, add_completion=False)

KeyRingRunner = Callable[[ReconcilingKeyRing, SqliteKeyStore, logging.Logger, ReportCollector], Awaitable[int]]


def echoJson(data: Any) -> None:
    typer.echo(json.dumps(data, ensure_ascii=False, indent=2))


def requireDirectory(settings: Settings) -> None:
    """
    Назначение:
        Проверяет наличие адреса каталога для команд, которым нужен каталог.

    Поведение:
        - Если адрес не задан, exit code 2.
    """
    if not settings.directory_url:
        typer.echo("ERROR: missing directory settings: directory_url", err=True)
        raise typer.Exit(code=2)


def settingsSummary(settings: Settings, sources: list[str]) -> dict[str, Any]:
    """Безопасная сводка настроек (без секретов)."""
    return {
        "directory_url": settings.directory_url,
        "directory_token": maskSecret(settings.directory_token),
        "realms": dict(settings.realms),
        "keyring_db": settings.keyring_db,
        "log_dir": settings.log_dir,
        "report_dir": settings.report_dir,
        "log_level": settings.log_level,
        "timeout_seconds": settings.timeout_seconds,
        "retries": settings.retries,
        "sources": sources,
    }


def createDirectoryClient(settings: Settings) -> DirectoryApiClient:
    return DirectoryApiClient(
        baseUrl=settings.directory_url or "",
        token=settings.directory_token,
        timeoutSeconds=settings.timeout_seconds,
        tlsSkipVerify=settings.tls_skip_verify,
        caFile=settings.ca_file,
        retries=settings.retries,
        retryBackoffSeconds=settings.retry_backoff_seconds,
    )


def runWithReport(
    ctx: typer.Context,
    commandName: str,
    requiresDirectory: bool,
    runner: Callable[[logging.Logger, ReportCollector], int],
) -> None:
    """
    Назначение:
        Унифицированная обвязка выполнения команд:
        - создаёт логгер + файл лога
        - создаёт report.json skeleton
        - проверяет обязательные настройки каталога
        - гарантирует запись отчёта в finally
    """
    runId = ctx.obj["runId"]
    settings: Settings = ctx.obj["settings"]
    sources = ctx.obj["sources"]

    startMonotonic = time.monotonic()
    logger, logFilePath = createCommandLogger(
        commandName=commandName,
        logDir=settings.log_dir,
        runId=runId,
        logLevel=settings.log_level,
    )
    report = createEmptyReport(runId=runId, command=commandName, configSources=sources)
    report.meta.directory_url = settings.directory_url

    exitCode: int | None = None
    try:
        logEvent(logger, logging.INFO, runId, "core", f"Command started settings={settingsSummary(settings, sources)}")
        if requiresDirectory:
            try:
                requireDirectory(settings)
            except typer.Exit:
                logEvent(logger, logging.ERROR, runId, "config", "Missing directory settings")
                report.add_error({"code": "CONFIG_ERROR", "message": "directory_url is required"})
                exitCode = 2
                return
        exitCode = runner(logger, report)
    finally:
        finalizeReport(
            report=report,
            durationMs=getDurationMs(startMonotonic, time.monotonic()),
            logFile=logFilePath,
            keyringDb=settings.keyring_db,
            reportDir=settings.report_dir,
        )
        reportPath = writeReportJson(report, settings.report_dir, f"report_{commandName}_{runId}")
        logEvent(logger, logging.INFO, runId, "report", f"Report written: {reportPath}")
        closeCommandLogger(logger)

        if exitCode:
            raise typer.Exit(code=exitCode)


def openKeyring(dbPath: str) -> sqlite3.Connection:
    """Открывает связку и создаёт схему; при ошибке схемы соединение закрывается."""
    conn = openKeyringDb(dbPath)
    try:
        ensure_keyring_schema(conn)
    except Exception:
        conn.close()
        raise
    return conn


def runKeyRingCommand(
    ctx: typer.Context,
    commandName: str,
    requiresDirectory: bool,
    runner: KeyRingRunner,
) -> None:
    """
    Назначение:
        Обвязка команд над связкой: открывает SQLite-связку, при наличии
        directory_url создаёт клиента каталога и собирает ReconcilingKeyRing.

    Поведение:
        - Ошибки хранилища и каталога -> сообщение в stderr, лог, отчёт, exit code 2.
    """
    settings: Settings = ctx.obj["settings"]
    runId = ctx.obj["runId"]

    def execute(logger: logging.Logger, report: ReportCollector) -> int:
        try:
            conn = openKeyring(settings.keyring_db)
        except sqlite3.Error as exc:
            logEvent(logger, logging.ERROR, runId, "store", f"Failed to open keyring DB: {exc}")
            typer.echo("ERROR: failed to open keyring DB (see logs/report)", err=True)
            return 2

        codec = JsonKeyBlockCodec()
        store = SqliteKeyStore(conn, codec)

        async def run() -> int:
            if not settings.directory_url:
                keyring = ReconcilingKeyRing(store, codec, logger=logger, run_id=runId)
                return await runner(keyring, store, logger, report)
            async with createDirectoryClient(settings) as client:
                keyring = ReconcilingKeyRing(
                    store,
                    codec,
                    remote=HttpDirectoryKeyProvider(client, codec),
                    realm_lookup=StaticRealmLookup(settings.realms) if settings.realms else None,
                    logger=logger,
                    run_id=runId,
                )
                try:
                    return await runner(keyring, store, logger, report)
                finally:
                    report.set_context("directory", {"retries_used": client.getRetryAttempts()})

        try:
            return asyncio.run(run())
        except RemoteUnavailableError as exc:
            logEvent(logger, logging.ERROR, runId, "remote", f"{commandName} failed: {exc}")
            report.add_error(exc.to_dict())
            report.add_op(commandName, failed=1, count=1)
            typer.echo(f"ERROR: directory unavailable: {exc.message}", err=True)
            return 2
        except (KeyStoreError, KeyBlockParseError) as exc:
            logEvent(logger, logging.ERROR, runId, exc.category, f"{commandName} failed: {exc}")
            report.add_error(exc.to_dict())
            report.add_op(commandName, failed=1, count=1)
            typer.echo(f"ERROR: {exc.message}", err=True)
            return 2
        finally:
            conn.close()

    runWithReport(ctx=ctx, commandName=commandName, requiresDirectory=requiresDirectory, runner=execute)


def parseKeyType(value: str) -> KeyType:
    try:
        return KeyType(value.strip().lower())
    except ValueError:
        typer.echo(f"ERROR: unsupported key type: {value} (public|private|all)", err=True)
        raise typer.Exit(code=2)


def parseKeyId(value: str) -> bytes:
    try:
        keyId = bytes.fromhex(value.strip().removeprefix("0x"))
    except ValueError:
        keyId = b""
    if not keyId:
        typer.echo(f"ERROR: key id must be hex: {value}", err=True)
        raise typer.Exit(code=2)
    return keyId


@app.command("search")
def searchCommand(
    ctx: typer.Context,
    uid: str = typer.Argument(..., help="User ID or email to search for"),
    keyType: str = typer.Option("public", "--type", help="Key type: public|private|all"),
    strict: bool = typer.Option(False, "--strict", help="Fail if the directory does not respond"),
) -> None:
    """Search keys locally and in the directory."""
    parsedType = parseKeyType(keyType)

    async def runner(keyring: ReconcilingKeyRing, _store, _logger, report: ReportCollector) -> int:
        found = await keyring.search_key_local_and_remote(uid, parsedType, require_remote_response=strict)
        result = [d.to_dict() for d in found]
        report.add_op("search", ok=1, count=len(result))
        report.set_result(result)
        echoJson(result)
        return 0

    runKeyRingCommand(ctx, "search", requiresDirectory=False, runner=runner)


@app.command("resolve-id")
def resolveIdCommand(
    ctx: typer.Context,
    keyId: str = typer.Argument(..., help="Key ID (hex)"),
    secret: bool = typer.Option(False, "--secret", help="Search the private key ring"),
    strict: bool = typer.Option(False, "--strict", help="Fail if the directory does not respond"),
) -> None:
    """Resolve a key block by key ID locally, then in the directory."""
    parsedId = parseKeyId(keyId)

    async def runner(keyring: ReconcilingKeyRing, _store, _logger, report: ReportCollector) -> int:
        record = await keyring.resolve_key_block_by_id(parsedId, secret=secret, require_remote_response=strict)
        result = to_key_object(record).to_dict() if record is not None else None
        report.add_op("resolve-id", ok=1, count=0 if record is None else 1)
        report.set_result(result)
        echoJson(result)
        return 0

    runKeyRingCommand(ctx, "resolve-id", requiresDirectory=False, runner=runner)


@app.command("compare")
def compareCommand(
    ctx: typer.Context,
    uid: str = typer.Argument(..., help="User ID to check against the directory"),
    strict: bool = typer.Option(False, "--strict", help="Fail if the directory does not respond"),
) -> None:
    """Compare local public keys with the directory."""

    async def runner(keyring: ReconcilingKeyRing, _store, _logger, report: ReportCollector) -> int:
        syncReport = await keyring.compare_with_remote(uid, require_remote_response=strict)
        result = syncReport.to_dict()
        report.add_op("compare", ok=1, count=len(result["localOnly"]) + len(result["common"]) + len(result["remoteOnly"]))
        report.set_result(result)
        echoJson(result)
        return 0

    runKeyRingCommand(ctx, "compare", requiresDirectory=False, runner=runner)


@app.command("upload")
def uploadCommand(
    ctx: typer.Context,
    uid: str = typer.Argument(..., help="User ID whose public keys are uploaded"),
    strict: bool = typer.Option(False, "--strict", help="Fail if the directory does not respond"),
) -> None:
    """Upload local public keys for a user ID to the directory."""

    async def runner(keyring: ReconcilingKeyRing, _store, _logger, report: ReportCollector) -> int:
        uploaded = await keyring.upload_keys(uid, require_remote_response=strict)
        report.add_op("upload", ok=1 if uploaded else 0, failed=0 if uploaded else 1, count=1)
        report.set_result({"uploaded": uploaded})
        echoJson({"uploaded": uploaded})
        return 0 if uploaded else 1

    runKeyRingCommand(ctx, "upload", requiresDirectory=True, runner=runner)


@app.command("import")
def importCommand(
    ctx: typer.Context,
    keyFile: Path = typer.Argument(..., help="Serialized key block file"),
) -> None:
    """Import a key block into the local keyring."""

    async def runner(keyring: ReconcilingKeyRing, _store, _logger, report: ReportCollector) -> int:
        try:
            block = keyFile.read_bytes()
        except OSError as exc:
            typer.echo(f"ERROR: cannot read key file: {exc}", err=True)
            return 2
        imported = keyring.import_key(keyring.codec.parse(block))
        result = {"imported": imported is not None, "key": to_key_object(imported).to_dict() if imported else None}
        report.add_op("import", ok=1, count=1 if imported else 0)
        report.set_result(result)
        echoJson(result)
        return 0

    runKeyRingCommand(ctx, "import", requiresDirectory=False, runner=runner)


@app.command("export")
def exportCommand(
    ctx: typer.Context,
    backupFile: Path = typer.Argument(..., help="Backup file to write"),
) -> None:
    """Export the local keyring as a backup file."""

    async def runner(_keyring, store: SqliteKeyStore, _logger, report: ReportCollector) -> int:
        blocks = store.export_keyring()
        backupFile.parent.mkdir(parents=True, exist_ok=True)
        backupFile.write_text(
            json.dumps([base64.b64encode(b).decode("ascii") for b in blocks], indent=2),
            encoding="utf-8",
        )
        report.add_op("export", ok=1, count=len(blocks))
        report.set_context("keyring", store.count_keys())
        report.set_result({"exported": len(blocks), "path": str(backupFile)})
        echoJson({"exported": len(blocks)})
        return 0

    runKeyRingCommand(ctx, "export", requiresDirectory=False, runner=runner)


@app.command("restore")
def restoreCommand(
    ctx: typer.Context,
    backupFile: Path = typer.Argument(..., help="Backup file produced by export"),
    uid: str = typer.Option(..., "--uid", help="User ID to associate with restored keys"),
) -> None:
    """Restore keys from a backup file."""

    async def runner(keyring: ReconcilingKeyRing, _store, _logger, report: ReportCollector) -> int:
        try:
            encoded = json.loads(backupFile.read_text(encoding="utf-8"))
            blocks = [base64.b64decode(item, validate=True) for item in encoded]
        except (OSError, ValueError, TypeError, binascii.Error) as exc:
            typer.echo(f"ERROR: invalid backup file: {exc}", err=True)
            return 2
        restored = keyring.restore_keyring(blocks, uid)
        result = [to_key_object(r).to_dict() for r in restored]
        report.add_op("restore", ok=1, count=len(result))
        report.set_result(result)
        echoJson(result)
        return 0

    runKeyRingCommand(ctx, "restore", requiresDirectory=False, runner=runner)


@app.command("check-directory")
def checkDirectoryCommand(ctx: typer.Context) -> None:
    """Check that the key directory is reachable."""
    settings: Settings = ctx.obj["settings"]
    runId = ctx.obj["runId"]

    def execute(logger: logging.Logger, report: ReportCollector) -> int:
        async def probe() -> int:
            async with createDirectoryClient(settings) as client:
                start = time.monotonic()
                await client.getJson("/v1/health")
                return int((time.monotonic() - start) * 1000)

        try:
            latencyMs = asyncio.run(probe())
        except ApiError as exc:
            logEvent(logger, logging.ERROR, runId, "api", f"Directory check failed: {exc}")
            report.add_error(exc.to_dict())
            typer.echo("ERROR: directory check failed (see logs/report)", err=True)
            return 2
        logEvent(logger, logging.INFO, runId, "api", f"directory ok url={settings.directory_url} latency_ms={latencyMs}")
        report.add_op("check-directory", ok=1, count=1)
        echoJson({"ok": True, "latency_ms": latencyMs})
        return 0

    runWithReport(ctx=ctx, commandName="check-directory", requiresDirectory=True, runner=execute)


@app.command("show-config")
def showConfigCommand(ctx: typer.Context) -> None:
    """Print effective settings (secrets masked)."""
    echoJson(settingsSummary(ctx.obj["settings"], ctx.obj["sources"]))


@app.callback()
def main(
    ctx: typer.Context,
    config: str | None = typer.Option(None, "--config", help="Path to config.yml"),
    runId: str | None = typer.Option(None, "--run-id", help="Run identifier. If omitted, generated."),
    logLevel: str | None = typer.Option(None, "--log-level", help="Log level: ERROR|WARN|INFO|DEBUG"),
    logDir: str | None = typer.Option(None, "--log-dir", help="Directory for logs."),
    reportDir: str | None = typer.Option(None, "--report-dir", help="Directory for reports."),
    keyringDb: str | None = typer.Option(None, "--keyring-db", help="Path to the local keyring SQLite DB."),
    directoryUrl: str | None = typer.Option(None, "--directory-url", help="Key directory base URL"),
    directoryToken: str | None = typer.Option(None, "--directory-token", help="Key directory bearer token"),
    realm: list[str] | None = typer.Option(None, "--realm", help="Directory realm: domain or domain=realm (repeatable)"),
    timeoutSeconds: float | None = typer.Option(None, "--timeout-seconds", help="Directory request timeout"),
    retries: int | None = typer.Option(None, "--retries", help="Directory request retries"),
    tlsSkipVerify: bool | None = typer.Option(None, "--tls-skip-verify", help="Disable TLS verification"),
    caFile: str | None = typer.Option(None, "--ca-file", help="CA file path"),
) -> None:
    cliOverrides = {
        "log_level": logLevel,
        "log_dir": logDir,
        "report_dir": reportDir,
        "keyring_db": keyringDb,
        "directory_url": directoryUrl,
        "directory_token": directoryToken,
        "realms": list(realm) if realm else None,
        "timeout_seconds": timeoutSeconds,
        "retries": retries,
        "tls_skip_verify": tlsSkipVerify,
        "ca_file": caFile,
    }
    try:
        loaded = load_settings(config, cliOverrides)
    except ValueError as exc:
        typer.echo(f"ERROR: invalid settings: {exc}", err=True)
        raise typer.Exit(code=2)

    ctx.obj = {
        "runId": runId or generate_run_id(),
        "settings": loaded.settings,
        "sources": loaded.sources_used,
    }


if __name__ == "__main__":
    app()
