import asyncio
from typing import Optional

import typer

from .chat import ChatClient
from .connection import EVENT_DISCONNECT, EVENT_RECONNECT_FAILED, ChatConnection
from .store import DeliveryState, LocalMessage
from .transport import GrpcTransport
from ..config import get_settings
from ..errors import ChatError
from ..proto.chat_wire import MESSAGE_NEW, NOTIFICATION_NEW, TYPING_UPDATE

app = typer.Typer(help="gRPC group chat client")

HELP = ("Commands:\n"
        "  /groups                 list your groups with unread counts\n"
        "  /open <group_id>        view a group (joins and loads history)\n"
        "  /close                  stop viewing the current group\n"
        "  /older                  load older messages of the current group\n"
        "  /resend <token>         retry a failed message\n"
        "  /notifications          list notifications\n"
        "  /read <id> | /read-all  mark notifications read\n"
        "  /reconnect              reconnect after giving up\n"
        "  /quit\n"
        "Anything else is sent to the current group.")


def _format(msg: LocalMessage) -> str:
    marker = {DeliveryState.PENDING: " (sending)",
              DeliveryState.FAILED: f" (failed, /resend {msg.client_token})"}.get(msg.state, "")
    seq = f"#{msg.seq}" if msg.seq is not None else "#-"
    return f"[{msg.group_id} {seq}] {msg.sender_name or msg.sender_id}: {msg.content}{marker}"


async def _run(user_id: str, host: str, port: int):
    """Interactive client loop.

    Connects as ``user_id`` (already authenticated upstream), subscribes to
    every group and prints live events while reading commands from stdin.

    Args:
        user_id (str): Participant ID
        host (str): Chat server hostname
        port (int): Chat server port
    """
    settings = get_settings()
    transport = GrpcTransport(f"{host}:{port}", settings.connect_timeout)
    client = ChatClient(transport, user_id, settings)
    conn: ChatConnection = client.connection

    def on_message(payload):
        if payload.get("senderId") != user_id:
            print(f"[{payload['groupId']} #{payload['seq']}] {payload.get('senderName') or payload['senderId']}: "
                  f"{payload['content']}")

    def on_typing(payload):
        if payload.get("groupId") == client.store.active_group_id and payload.get("userId") != user_id:
            state = "is typing..." if payload.get("isTyping") else "stopped typing"
            print(f"[typing] {payload['userId']} {state}")

    def on_notification(payload):
        print(f"[notification] {payload.get('title')}: {payload.get('message')}")

    conn.on(MESSAGE_NEW, on_message)
    conn.on(TYPING_UPDATE, on_typing)
    conn.on(NOTIFICATION_NEW, on_notification)
    conn.on(EVENT_DISCONNECT, lambda info: print(f"[disconnected] {info['reason']}"))
    conn.on(EVENT_RECONNECT_FAILED, lambda info: print("[offline] Gave up reconnecting; type /reconnect"))

    try:
        await client.start()
    except ChatError as e:
        print(f"Error connecting to {host}:{port}: {e.message}")
        await transport.close()
        return
    print(f"Connected as {user_id}. Type /help for commands.")

    loop = asyncio.get_event_loop()
    try:
        while True:
            line = (await loop.run_in_executor(None, input, "")).strip()
            if not line:
                continue
            try:
                if line in {"/quit", "/exit"}:
                    break
                if line in {"/help", "help"}:
                    print(HELP)
                elif line == "/groups":
                    for g in await client.load_groups():
                        print(f" - {g['id']} {g['name']} unread={client.store.unread_count(g['id'])}")
                elif line.startswith("/open "):
                    group_id = line[len("/open "):].strip()
                    await client.open_group(group_id)
                    for msg in client.messages(group_id):
                        print(_format(msg))
                elif line == "/close":
                    client.close_group()
                elif line == "/older":
                    added = await client.load_older()
                    print(f"[history] {added} older messages loaded")
                    for msg in client.messages()[:added]:
                        print(_format(msg))
                elif line.startswith("/resend "):
                    print(_format(await client.resend(line[len("/resend "):].strip())))
                elif line == "/notifications":
                    for n in await client.notifications.load():
                        flag = " " if n.get("isRead") else "*"
                        print(f" {flag} {n['id']} {n['title']}: {n.get('message', '')}")
                elif line.startswith("/read "):
                    await client.notifications.mark_read(line[len("/read "):].strip())
                elif line == "/read-all":
                    count = await client.notifications.mark_all_read()
                    print(f"[notifications] {count} marked read")
                elif line == "/reconnect":
                    await conn.reconnect()
                elif line.startswith("/"):
                    print('Type "/help" for commands.')
                elif not client.can_compose:
                    print("[error] Open a group while connected to send messages")
                else:
                    msg = await client.send(line)
                    if msg.state == DeliveryState.FAILED:
                        print(_format(msg))
            except ChatError as e:
                print(f"[error] {e.message}")
    finally:
        await client.stop()
        await transport.close()


@app.command("run")
def run_cmd(
    user: str = typer.Option(..., help="Authenticated user ID"),
    host: Optional[str] = typer.Option(None, help="Server hostname (default from settings)"),
    port: Optional[int] = typer.Option(None, help="Server port (default from settings)"),
):
    """
    Run the interactive chat client.
    """
    settings = get_settings()
    asyncio.run(_run(user, host or settings.host, port or settings.port))


@app.command("history")
def history_cmd(
    user: str = typer.Option(..., help="Authenticated user ID"),
    group: str = typer.Option(..., help="Group ID"),
    before: Optional[int] = typer.Option(None, help="Only messages with an ordering key below this"),
    limit: int = typer.Option(50, help="Page size"),
):
    """
    Print one page of a group's history.
    """
    settings = get_settings()

    async def fetch():
        transport = GrpcTransport(settings.target, settings.connect_timeout)
        try:
            request = {"userId": user, "groupId": group, "limit": limit}
            if before is not None:
                request["before"] = before
            return await transport.call("GetMessages", request, settings.ack_timeout)
        finally:
            await transport.close()

    reply = asyncio.run(fetch())
    if not reply.get("success"):
        typer.echo(f"Error: {reply.get('error')}", err=True)
        raise typer.Exit(code=1)
    for m in reply["messages"]:
        typer.echo(f"#{m['seq']} {m.get('senderName') or m['senderId']}: {m['content']}")


if __name__ == "__main__":
    app()
