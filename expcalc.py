import asyncio
import sys
from pathlib import Path

from expcalc.expcalc_config import ConfigError, load_config
from expcalc.expcalc_runtime import ExpressionRunner

# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)


def print_result(runner: ExpressionRunner, result) -> bool:
    """Prints one ExecutionResult. Returns False when it was an error."""
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        return False
    for effect in result.side_effects:
        if effect.get('topics') == ['stdout']:
            print(effect.get('message', ''))
    if result.value is not None:
        print(runner.printer.pformat(result.value))
    return True


def make_runner() -> ExpressionRunner:
    try:
        config = load_config()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(2)
    return ExpressionRunner(config=config)


async def run_script_file(file_path: str):
    """Run each line of a script file and exit with status 1 on the first error."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    runner = make_runner()
    runner.source_dir = str(p.parent.resolve())
    for line in source.splitlines():
        if line.strip().startswith("#"):
            continue
        result = runner.handle_line(line)
        if not print_result(runner, result):
            raise SystemExit(1)
        if not runner.running:
            break


async def main():
    """Run a script file when provided, otherwise start the interactive REPL."""
    if len(sys.argv) > 1:
        arg = sys.argv[1]
        if not arg.startswith("-"):
            await run_script_file(arg)
            return

    print("Expression Calculator v0.1")
    print("Type ':help' for commands, ':quit' or Ctrl+D to quit.")

    runner = make_runner()
    runner.source_dir = str(Path.cwd())

    while runner.running:
        try:
            raw = await ainput("Calc$ ")
            if raw == "":
                raise EOFError
            line = raw.strip()
            if not line:
                continue
            print_result(runner, runner.handle_line(line))
        except EOFError:
            print("\nExiting.")
            break


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")
