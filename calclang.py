"""calclang entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from interpreter import (
    RESULT_GRAPH,
    RESULT_PRINT,
    EvalOptions,
    ErrorFormatter,
    Interpreter,
    ProgramContext,
    Result,
)
from parser import parse_program
from values import format_number, value_to_string


def format_result(result: Result) -> str:
    payload = result.payload
    if result.kind == RESULT_PRINT:
        text = value_to_string(payload.value)
        return f"{payload.title}: {text}" if payload.title else text
    if result.kind == RESULT_GRAPH:
        names = ", ".join(function.name for function in payload.functions)
        return f"graph {names} on [{format_number(payload.domain_start)}, {format_number(payload.domain_end)}]"
    sizes = ", ".join(str(points.shape[0]) for points in payload.point_lists)
    return f"plot of {len(payload.point_lists)} point list(s) with {sizes} points"


def _report(ctx: ProgramContext, first_displayed: int, first_result: int, first_error: int, verbose: bool) -> None:
    for line, value in ctx.displayed[first_displayed:]:
        print(f"{line + 1}: {value_to_string(value)}")
    for result in ctx.results[first_result:]:
        print(format_result(result))
    new_errors = ctx.errors[first_error:]
    if new_errors:
        formatter = ErrorFormatter(ctx)
        print("\n\n".join(formatter.format_error(error) for error in new_errors), file=sys.stderr)
        if verbose and ctx.logger.entries:
            print(formatter.format_steps(), file=sys.stderr)


def run_repl(options: EvalOptions) -> int:
    print("calclang REPL. Enter statements, blank line to run buffer.")
    # One interpreter for the whole session so declarations persist.
    interpreter = Interpreter("", options)
    ctx = interpreter.ctx
    buffer: List[str] = []

    def _run(source: str) -> None:
        marks = (len(ctx.displayed), len(ctx.results), len(ctx.errors))
        interpreter.run_source(source)
        _report(ctx, *marks, verbose=options.verbose)

    while True:
        prompt = ">>> " if not buffer else "..> "
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        stripped = line.strip()
        if not buffer and stripped != "":
            if not stripped.endswith("{") and parse_program(line).parse_error is None:
                _run(line)
            else:
                # A lone line that does not parse starts multi-line input
                buffer.append(line)
            continue

        if stripped == "" and buffer:
            source_text = "\n".join(buffer)
            buffer.clear()
            _run(source_text)
            continue

        if stripped != "":
            buffer.append(line)
    return 1 if ctx.errors else 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="calclang calculator language interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record evaluation steps and show them with errors")
    parser.add_argument("--json", action="store_true", help="Emit the result, result records and errors as JSON")
    parser.add_argument("--max-iterations", type=int, default=1_000_000, help="Iteration limit per for loop")
    parser.add_argument("--max-depth", type=int, default=1000, help="Maximum user function call depth")
    parser.add_argument("--seed", type=int, default=None, help="Seed for random()")
    args = parser.parse_args(argv)

    options = EvalOptions(
        max_iterations=args.max_iterations,
        max_call_depth=args.max_depth,
        verbose=args.verbose,
        seed=args.seed,
    )

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(options)

    if args.source_mode:
        source_text = args.program
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    interpreter = Interpreter(source_text, options)
    ctx = interpreter.run(parse_program(source_text))
    if args.json:
        print(ErrorFormatter(ctx).to_json())
    else:
        _report(ctx, 0, 0, 0, verbose=args.verbose)
    return 1 if ctx.errors else 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
