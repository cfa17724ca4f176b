import asyncio
import sys
from pathlib import Path

from cue.cue_runtime import ScriptRunner, ScriptConfig
from cue.cue_printer import Printer

USAGE = "usage: cue.py [--list] [--config FILE] [SCRIPT]"

# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)

def print_effects(result):
    for effect in result.side_effects:
        if effect.get('topics') == ['log']:
            print(effect.get('message', ''))

def parse_args(argv):
    """Returns (script_path, config_path, list_only); exits on bad usage."""
    script_path = None
    config_path = None
    list_only = False
    args = list(argv)
    while args:
        arg = args.pop(0)
        if arg == "--list":
            list_only = True
        elif arg == "--config":
            if not args:
                print(USAGE, file=sys.stderr)
                raise SystemExit(2)
            config_path = args.pop(0)
        elif arg.startswith("-"):
            print(USAGE, file=sys.stderr)
            raise SystemExit(2)
        else:
            script_path = arg
    return script_path, config_path, list_only

async def run_script_file(file_path: str, config: ScriptConfig, list_only: bool = False):
    """Run a cue script file non-interactively and exit with appropriate status."""
    runner = ScriptRunner(config=config)
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    if list_only:
        from cue.cue_datatypes import ParseError
        try:
            commands = runner.compile(source)
        except ParseError as pe:
            print(f"Error on line {pe.line_number}: ParseError: {pe}", file=sys.stderr)
            raise SystemExit(1)
        print(Printer().pformat(commands))
        return
    result = await runner.handle_script(source)
    print_effects(result)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)
    if result.status == 'cancelled':
        print("Script cancelled.", file=sys.stderr)

async def main():
    """Run a script file when provided, otherwise start the interactive REPL."""
    script_path, config_path, list_only = parse_args(sys.argv[1:])
    config = ScriptConfig.from_file(config_path) if config_path else ScriptConfig()

    if script_path:
        await run_script_file(script_path, config, list_only)
        return

    print("cue REPL v0.1")
    print("Type 'quit' or press Ctrl+D to quit.")

    # One runner so every line shares the same environment
    runner = ScriptRunner(config=config)

    while True:
        try:
            raw = await ainput(">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()

            if not line:
                continue
            if line == "quit":
                break

            result = await runner.handle_script(line)
            print_effects(result)
            if result.status == 'error':
                print(result.format_error(), file=sys.stderr)

        except EOFError:
            print("\nExiting.")
            break

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")
