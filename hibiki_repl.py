import asyncio
import sys
from pathlib import Path

import yaml

from hibiki.hibiki_env import HibikiState
from hibiki.hibiki_errors import HibikiException
from hibiki.hibiki_paths import parse_path, parse_set_path
from hibiki.hibiki_printer import Printer
from hibiki.hibiki_serialize import deserialize, serialize

# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)

def load_data_file(file_path: str):
    """Read a YAML or JSON file used to seed the global root."""
    p = Path(file_path)
    try:
        text = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    fmt = "json" if p.suffix.lower() == ".json" else "yaml"
    try:
        return deserialize(text, fmt=fmt)
    except (ValueError, yaml.YAMLError) as e:
        print(f"Error: cannot load {file_path}: {e}", file=sys.stderr)
        raise SystemExit(1)

def run_command(state: HibikiState, printer: Printer, line: str):
    """Execute one console command and return the text to print, or None."""
    cmd, _, rest = line.partition(" ")
    rest = rest.strip()
    env = state.root_env()
    resolver = state.evaluator.path_resolver
    match cmd:
        case "get":
            if not rest:
                raise ValueError("usage: get <path>")
            return printer.pformat(resolver.resolve_throw(parse_path(rest), env))
        case "set":
            target, _, raw = rest.partition(" ")
            if not target:
                raise ValueError("usage: set [op:]<path> <value>")
            op, path = parse_set_path(target)
            value = deserialize(raw) if raw.strip() else None
            resolver.write_throw(path, env, value, op=op)
            return None
        case "json" | "yaml":
            path = parse_path(rest) if rest else parse_path("$")
            return serialize(resolver.resolve_throw(path, env), fmt=cmd).rstrip("\n")
    raise ValueError(f"unknown command '{cmd}' (get, set, json, yaml, exit)")

async def main():
    """Start the interactive console, optionally seeding the global root from a data file."""
    global_data = None
    if len(sys.argv) > 1 and not sys.argv[1].startswith("-"):
        global_data = load_data_file(sys.argv[1])

    print("Hibiki REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    # Setup
    state = HibikiState(global_data=global_data)
    printer = Printer()

    # REPL Loop
    while True:
        try:
            raw = await ainput(">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()

            if not line:
                continue
            if line == "exit":
                break

            out = run_command(state, printer, line)
            if out is not None:
                print(out)

        except EOFError:
            print("\nExiting.")
            break
        except (HibikiException, ValueError, yaml.YAMLError) as e:
            print(f"Error: {e}", file=sys.stderr)

def cli():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")

if __name__ == "__main__":
    cli()
