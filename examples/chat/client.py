"""Interactive chat client.

This example demonstrates:
- Listing and creating rooms in the shared registry
- Joining a room and receiving its full message list on every change
- Sending messages stamped with your identity

Run:
    uv run python examples/chat/client.py

Environment:
    KVCHAT_WS_URL   store WebSocket URL (default ws://127.0.0.1:8080/ws)
    KVCHAT_API_URL  token endpoint URL (default http://127.0.0.1:3000)
"""

import asyncio
import os
import sys

from kvchat import ChatSession, ChatClientConfig, KvChatError, Message, Room


def show_rooms(rooms: list[Room]) -> None:
    if not rooms:
        print("\033[96mNo rooms yet. Create one with /create <id> [name]\033[0m")
        return
    print("\033[96mRooms:")
    for room in rooms:
        print(f"  {room.id:<16} {room.display_name}")
    print("\033[0m", end="")


class MessagePrinter:
    """Prints messages not seen before; pushes carry the whole list."""

    def __init__(self, identity: str) -> None:
        self.identity = identity
        self.seen: set[str] = set()

    def __call__(self, messages: list[Message]) -> None:
        for message in messages:
            key = message.id or f"{message.sender}:{message.timestamp}"
            if key in self.seen:
                continue
            self.seen.add(key)
            if message.sender == self.identity:
                print(f"\033[90m[You] {message.text}\033[0m")
            else:
                print(f"[{message.sender}] {message.text}")

    def reset(self) -> None:
        self.seen.clear()


async def read_input() -> str:
    """Read a line of input asynchronously."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, sys.stdin.readline)


async def main() -> None:
    """Run the interactive chat client."""
    print("=== kvchat client ===")
    print()

    print("Enter your name: ", end="", flush=True)
    identity = (await read_input()).strip()
    if not identity:
        print("Name cannot be empty!")
        return

    config = ChatClientConfig.from_env(
        ws_url=os.environ.get("KVCHAT_WS_URL", "ws://127.0.0.1:8080/ws"),
        api_url=os.environ.get("KVCHAT_API_URL", "http://127.0.0.1:3000"),
        identity=identity,
    )
    printer = MessagePrinter(identity)

    async with ChatSession(config) as chat:
        chat.on_messages(printer)
        chat.on_rooms_changed(show_rooms)

        try:
            show_rooms(await chat.list_rooms())
        except KvChatError as e:
            print(f"\n\033[91mConnection error: {e}\033[0m")
            print("Make sure the server is running: uv run python examples/chat/server.py")
            return

        print("\nType /help for commands")
        while True:
            line = (await read_input()).strip()
            if not line:
                continue

            command, _, rest = line.partition(" ")
            try:
                if command == "/quit":
                    break
                elif command == "/help":
                    print("\n\033[96mCommands:")
                    print("  /rooms              - List rooms")
                    print("  /create <id> [name] - Create a room")
                    print("  /join <id>          - Join a room")
                    print("  /leave              - Leave the current room")
                    print("  /quit               - Exit\033[0m\n")
                elif command == "/rooms":
                    show_rooms(await chat.list_rooms())
                elif command == "/create":
                    room_id, _, name = rest.strip().partition(" ")
                    room = await chat.create_room(room_id, name or None)
                    print(f"\033[92mCreated room {room.id}\033[0m")
                elif command == "/join":
                    printer.reset()
                    await chat.join(rest.strip())
                    print(f"\033[92mJoined {chat.room_id}\033[0m")
                    printer(await chat.get_messages())
                elif command == "/leave":
                    await chat.leave()
                    print("\033[92mLeft the room\033[0m")
                elif line.startswith("/"):
                    print(f"\033[91mUnknown command: {command}\033[0m")
                elif chat.room_id is None:
                    print("\033[91mJoin a room first: /join <id>\033[0m")
                else:
                    await chat.send_message(line)
            except (KvChatError, ValueError) as e:
                print(f"\033[91mError: {e}\033[0m")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nGoodbye!")
