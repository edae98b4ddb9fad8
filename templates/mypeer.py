import asyncio
from pathlib import Path

from aioconsole import ainput

from parley import (
    EngineConfig,
    MemoryTransport,
    ParleyError,
    ProtocolEngine,
    SystemEvent,
)

CONFIG_PATH = Path(__file__).parent / "engine_config.json"

HELP = """commands:
  calc <x> <y>    ask the child to add two numbers
  echo <text>     ask the child to echo text back
  notify <text>   fire-and-forget message
  state           show the connection state
  disconnect      graceful disconnect
  connect         handshake again
  quit"""


def build_engine(name: str, origin: str, transport: MemoryTransport) -> ProtocolEngine:
    config = EngineConfig.from_file(str(CONFIG_PATH))
    config.origin = origin
    config.instance_id = name
    return ProtocolEngine(transport, config, name=name)


async def main() -> None:
    host_transport, child_transport = MemoryTransport.pair("host", "child")
    host = build_engine("host", "https://host.example", host_transport)
    child = build_engine("child", "https://child.example", child_transport)

    @child.handle("calc")
    async def calc(payload):
        return {"result": payload["x"] + payload["y"]}

    @child.handle("echo")
    async def echo(payload, metadata):
        return {"echo": payload, "from": metadata.target_id}

    @child.handle("notify")
    async def notify(payload):
        print(f"\r[child] notified: {payload}", flush=True)

    host.subscribe(SystemEvent.STATE_CHANGED,
                   lambda change: print(f"\r[host] {change.target_id}: {change.previous.value} -> {change.current.value}", flush=True))
    host.subscribe(SystemEvent.CONNECTION_LOST,
                   lambda lost: print(f"\r[host] connection to {lost.target_id} lost ({lost.reason})", flush=True))

    host.register_target("child", origin="https://child.example")
    await host.connect("child")
    print(HELP, flush=True)

    try:
        while True:
            line = (await ainput("parley> ")).strip()
            if not line:
                continue
            command, _, rest = line.partition(" ")
            try:
                if command == "quit":
                    break
                if command == "calc":
                    x, y = (float(v) for v in rest.split())
                    print(await host.request("child", "calc", {"x": x, "y": y}, timeout=1.0), flush=True)
                elif command == "echo":
                    print(await host.request("child", "echo", rest), flush=True)
                elif command == "notify":
                    await host.request("child", "notify", rest, expects_response=False)
                elif command == "state":
                    print(host.get_record("child"), flush=True)
                elif command == "disconnect":
                    print(f"[host] disconnected: {await host.disconnect('child')}", flush=True)
                elif command == "connect":
                    await host.connect("child")
                else:
                    print(HELP, flush=True)
            except (ParleyError, ValueError) as e:
                print(f"[error] {e}", flush=True)
    finally:
        host.shutdown()
        child.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
