from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from cipherline.core import crypto, proto
from cipherline.utils import codec

log = logging.getLogger("cipherline.cmd.client")

KEY_LOOKUP_TIMEOUT = 5.0


def ensure_key_pair(key_dir: Path) -> crypto.KeyPair:
    """Load the key pair kept in key_dir, generating it on first use."""
    pub_path = key_dir / "public.key"
    priv_path = key_dir / "private.key"
    if pub_path.exists() and priv_path.exists():
        return crypto.KeyPair(
            public_key=pub_path.read_text(encoding="utf-8").strip(),
            private_key=priv_path.read_text(encoding="utf-8").strip(),
        )
    pair = crypto.generate_key_pair()
    key_dir.mkdir(parents=True, exist_ok=True)
    pub_path.write_text(pair.public_key, encoding="utf-8")
    priv_path.write_text(pair.private_key, encoding="utf-8")
    priv_path.chmod(0o600)
    return pair


class ClientApp:
    def __init__(self, server_url: str, user_id: str, token: str, key_dir: Path) -> None:
        self.server_url = server_url
        self.user_id = user_id
        self.token = token
        self.keys = ensure_key_pair(key_dir)

        self.ws: Optional[ClientConnection] = None
        self.key_cache: Dict[str, str] = {}
        self.received: Dict[str, str] = {}  # messageId -> sender
        self._key_waiters: Dict[str, asyncio.Future] = {}
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        headers = {"Authorization": f"Bearer {self.token}"}
        async with connect(self.server_url, additional_headers=headers) as ws:
            self.ws = ws
            await self._send_frame("registerPublicKey", {"userId": self.user_id, "publicKey": self.keys.public_key})
            receiver = asyncio.create_task(self._rx_loop())
            try:
                await self._command_loop()
            finally:
                self.stop_event.set()
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receiver

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print("cipherline client ready. Commands: /tell <user> <msg>, /read <messageId>, /quit")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            if line == "/quit":
                break
            try:
                await self._handle_command(line)
            except ConnectionClosed:
                print("[error] connection closed")
                break

    async def _handle_command(self, line: str) -> None:
        if line.startswith("/tell "):
            parts = line.split(" ", 2)
            if len(parts) < 3:
                print("Usage: /tell <user> <message>")
                return
            await self._send_dm(parts[1], parts[2])
        elif line.startswith("/read "):
            parts = line.split()
            if len(parts) != 2:
                print("Usage: /read <messageId>")
                return
            sender = self.received.get(parts[1])
            if sender is None:
                print(f"[error] no received message {parts[1]}")
                return
            await self._send_frame("messageRead", {"messageId": parts[1], "senderId": sender})
        else:
            print("Unknown command")

    async def _send_dm(self, receiver: str, text: str) -> None:
        public_key = await self._lookup_key(receiver)
        if not public_key:
            print(f"[error] {receiver} has no registered public key")
            return
        try:
            envelope = crypto.encrypt(text.encode("utf-8"), public_key)
        except crypto.EncryptionError as exc:
            print(f"[error] cannot encrypt for {receiver}: {exc}")
            return
        await self._send_frame(
            "sendMessage",
            {"sender": self.user_id, "receiver": receiver, **envelope.to_wire()},
        )

    async def _lookup_key(self, user_id: str) -> Optional[str]:
        if user_id in self.key_cache:
            return self.key_cache[user_id]
        waiter = self._key_waiters.get(user_id)
        if waiter is None:
            waiter = asyncio.get_running_loop().create_future()
            self._key_waiters[user_id] = waiter
            await self._send_frame("requestPublicKey", {"userId": user_id})
        try:
            return await asyncio.wait_for(asyncio.shield(waiter), KEY_LOOKUP_TIMEOUT)
        except asyncio.TimeoutError:
            return None
        finally:
            self._key_waiters.pop(user_id, None)

    async def _rx_loop(self) -> None:
        assert self.ws is not None
        try:
            async for raw in self.ws:
                try:
                    frame = codec.loads(raw)
                except ValueError:
                    log.warning("Ignoring undecodable frame")
                    continue
                await self._handle_incoming(frame)
        except ConnectionClosed:
            self.stop_event.set()

    async def _handle_incoming(self, frame: Dict[str, Any]) -> None:
        event = frame.get("event")
        data = frame.get("data") or {}
        if event == "receiveMessage":
            await self._handle_receive(data)
        elif event == "statusUpdate":
            print(f"[status] {data.get('messageId')} -> {data.get('status')}")
        elif event == "messageAccepted":
            print(f"[sent] {data.get('messageId')}")
        elif event == "publicKey":
            self._handle_public_key(data)
        elif event == "error":
            print(f"[error] {data.get('code')}: {data.get('detail')}")
        else:
            log.debug("Unhandled event %s", event)

    async def _handle_receive(self, data: Dict[str, Any]) -> None:
        sender = data.get("sender", "?")
        message_id = data.get("messageId")
        try:
            envelope = proto.EncryptedEnvelope.model_validate(data)
            text = crypto.decrypt(envelope, self.keys.private_key).decode("utf-8", errors="replace")
        except (ValueError, crypto.DecryptionError):
            text = "[unreadable message]"
        print(f"[dm:{sender}] ({message_id}) {text}")
        if message_id:
            self.received[message_id] = sender
            await self._send_frame("messageDelivered", {"messageId": message_id, "senderId": sender})

    def _handle_public_key(self, data: Dict[str, Any]) -> None:
        user_id = data.get("userId")
        key = data.get("publicKey")
        if user_id and key:
            self.key_cache[user_id] = key
        waiter = self._key_waiters.get(user_id)
        if waiter is not None and not waiter.done():
            waiter.set_result(key)

    async def _send_frame(self, event: str, data: Dict[str, Any]) -> None:
        assert self.ws is not None
        await self.ws.send(codec.dumps(proto.build_frame(event, data)).decode("utf-8"))


async def amain(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="cipherline client")
    parser.add_argument("--server", required=True, help="ws://host:port of a cipherline relay")
    parser.add_argument("--user", dest="user_id", required=True, help="User identifier")
    parser.add_argument("--token", required=True, help="Bearer token issued for --user")
    parser.add_argument("--key-dir", default="~/.cipherline", help="Directory to store client keys")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    key_dir = Path(args.key_dir).expanduser() / args.user_id
    app = ClientApp(args.server, args.user_id, args.token, key_dir)
    await app.run()


def main(argv: list[str] | None = None) -> None:
    asyncio.run(amain(argv))


if __name__ == "__main__":
    main()
