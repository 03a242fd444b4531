import asyncio
import os
import time
from typing import List, Optional

import typer
from grpc import aio

from ..config import Settings, get_settings
from ..proto import chat_pb2_grpc
from .hub import Hub
from .models import Member, User
from .notifications import NotificationService
from .repo import GroupsRepo, MessagesRepo, NotificationsRepo, UsersRepo
from .service import ChatService, logger  # Reuse the same logger

app = typer.Typer(help="gRPC group chat server")


def build_service(settings: Optional[Settings] = None) -> ChatService:
    """Wire repositories, hub and notification service into a ChatService.

    Args:
        settings (Settings, optional): Configuration; defaults to get_settings()

    Returns:
        ChatService: Ready-to-serve service backed by JSONL files under ``data_dir``
    """
    settings = settings or get_settings()
    data_dir = settings.data_dir
    hub = Hub()
    return ChatService(
        UsersRepo(os.path.join(data_dir, "users.jsonl")),
        MessagesRepo(os.path.join(data_dir, "messages.jsonl")),
        GroupsRepo(os.path.join(data_dir, "groups.jsonl")),
        NotificationService(NotificationsRepo(os.path.join(data_dir, "notifications.jsonl")), hub),
        hub,
        settings,
    )


async def serve(settings: Optional[Settings] = None):
    """Start the chat server.

    Binds the gRPC server to the configured host and port and serves the
    ``/chat`` stream plus the request/response methods until terminated.

    Args:
        settings (Settings, optional): Configuration; defaults to get_settings()
    """
    settings = settings or get_settings()
    server = aio.server()
    chat_pb2_grpc.add_ChatServiceServicer_to_server(build_service(settings), server)
    listen_addr = settings.target
    server.add_insecure_port(listen_addr)
    logger.info(f"Server starting, listening on {listen_addr}")
    await server.start()
    logger.info(f"Server is now running on {listen_addr}")
    await server.wait_for_termination()


@app.command("serve")
def serve_cmd(
    host: Optional[str] = typer.Option(None, help="Bind address (default from settings)"),
    port: Optional[int] = typer.Option(None, help="Port (default from settings)"),
):
    """
    Run the chat server.
    """
    settings = get_settings()
    if host or port:
        settings = settings.model_copy(update={"host": host or settings.host, "port": port or settings.port})
    asyncio.run(serve(settings))


@app.command("add-user")
def add_user_cmd(user_id: str, display_name: str):
    """
    Register a participant known to the identity system.
    """
    settings = get_settings()
    UsersRepo(os.path.join(settings.data_dir, "users.jsonl")).append_user(User(id=user_id, display_name=display_name))


@app.command("create-group")
def create_group_cmd(
    group_id: str,
    name: str,
    member: List[str] = typer.Option(..., help="Member user ID; repeat for each member"),
    subject_title: Optional[str] = typer.Option(None, help="Title of the associated event"),
):
    """
    Store a group allocated by the matching process.
    """
    settings = get_settings()
    users = UsersRepo(os.path.join(settings.data_dir, "users.jsonl"))
    groups = GroupsRepo(os.path.join(settings.data_dir, "groups.jsonl"))
    members = []
    for user_id in member:
        user = users.get(user_id)
        members.append(Member(user_id=user_id, display_name=user.display_name if user else ""))
    try:
        groups.create_group(group_id, name, members, int(time.time() * 1000), subject_title=subject_title)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
