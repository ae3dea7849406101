"""Click CLI for running and exercising the gateway."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from difygate.config import Settings
from difygate.dify.client import ChatStreamClient, UpstreamError
from difygate.dify.models import StreamEventKind
from difygate.webhook.auth import SIGNATURE_PREFIX, compute_signature


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """DifyGate: WhatsApp to Dify relay and email gateway."""
    ctx.ensure_object(dict)
    ctx.obj["settings"] = Settings.from_env()


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address.")
@click.option("--port", default=6001, type=int, help="Bind port.")
def serve(host: str, port: int) -> None:
    """Run the HTTP gateway under uvicorn."""
    import uvicorn

    uvicorn.run("difygate.api.app:create_app_from_env", factory=True, host=host, port=port)


@cli.command()
@click.argument("query")
@click.option("--user", default="cli-user", help="Dify end-user identifier.")
@click.option("--conversation-id", default="", help="Continue an existing conversation.")
@click.option("--blocking", is_flag=True, help="Wait for the complete answer.")
@click.pass_context
def chat(
    ctx: click.Context, query: str, user: str, conversation_id: str, blocking: bool,
) -> None:
    """Send QUERY to the configured Dify app and print the answer."""
    settings: Settings = ctx.obj["settings"]
    client = ChatStreamClient(
        base_url=settings.dify_base_url,
        api_key=settings.dify_api_key,
        client_id=settings.dify_client_id,
    )
    if blocking:
        try:
            answer = asyncio.run(client.chat_blocking(query, user, conversation_id))
        except UpstreamError as exc:
            click.echo(str(exc), err=True)
            sys.exit(1)
        click.echo(answer.answer)
        return

    error = asyncio.run(_stream_to_stdout(client, query, user, conversation_id))
    if error:
        click.echo(error, err=True)
        sys.exit(1)


async def _stream_to_stdout(
    client: ChatStreamClient, query: str, user: str, conversation_id: str,
) -> str | None:
    stream = client.open_stream(query, user, conversation_id)
    async for event in stream.events():
        if event.kind is StreamEventKind.ERROR:
            return f"Error from AI: {event.error_message}"
        if event.answer_fragment:
            click.echo(event.answer_fragment, nl=False)
    click.echo()
    return str(stream.error) if stream.error else None


@cli.command()
@click.argument("payload", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--secret", default=None, help="App secret (defaults to DIFYGATE_WHATSAPP_APP_SECRET).")
@click.pass_context
def sign(ctx: click.Context, payload: Path, secret: str | None) -> None:
    """Print the X-Hub-Signature-256 header value for PAYLOAD."""
    settings: Settings = ctx.obj["settings"]
    key = secret if secret is not None else settings.whatsapp_app_secret
    if not key:
        raise click.UsageError("no app secret given and DIFYGATE_WHATSAPP_APP_SECRET is unset")
    click.echo(SIGNATURE_PREFIX + compute_signature(payload.read_bytes(), key.encode()))
