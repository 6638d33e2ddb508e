import asyncio
import signal
import sys

from dotenv import load_dotenv
from loguru import logger

from agent_turn_loop.agent import Agent
from agent_turn_loop.app_config import load_json_config, parse_app_config, resolve_runtime_env
from agent_turn_loop.bootstrap import bootstrap_runtime
from agent_turn_loop.display import ConsoleDisplay
from agent_turn_loop.errors import AgentLoopError
from agent_turn_loop.turn_controller import TurnResult, TurnState

_LINE_PREFIX = "assistant> "


async def run_cancellable_turn(agent: Agent, display: ConsoleDisplay, user_input: str) -> TurnResult | None:
    """Run one input line; Ctrl-C cancels the turn without leaving the REPL."""
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(agent.run(user_input))
    try:
        loop.add_signal_handler(signal.SIGINT, task.cancel)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        # No loop signal handlers on this platform: Ctrl-C ends the program instead.
        handler_installed = False

    try:
        await asyncio.wait({task})
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)

    display.finish()
    if task.cancelled():
        print(f"{_LINE_PREFIX}[interrupted]")
        return None
    return task.result()


def report_turn(result: TurnResult | None) -> None:
    if result is None:
        return
    if result.state is TurnState.ITERATION_LIMIT_REACHED:
        print(f"{_LINE_PREFIX}{result.message.content}")
    if result.stream_interrupted:
        print(f"{_LINE_PREFIX}[response interrupted by a provider error; the partial answer was kept]")
    if result.persist_error is not None:
        print(f"{_LINE_PREFIX}[warning: {result.persist_error}]")


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env([app.provider_name, *app.fallback_providers])

    try:
        runtime = await bootstrap_runtime(app, env)
    except ValueError as ex:
        logger.error(str(ex))
        sys.exit(1)

    agent = runtime.agent
    print("agent-turn-loop (type 'exit' to quit, '/help' for commands)")
    print("Providers: " + " -> ".join(f"{a.name} ({a.model})" for a in runtime.adapters))
    print("Tools:")
    for t in runtime.tools:
        print(f"  - {t.name}")
    if app.working_directory:
        print(f"Working directory: {app.working_directory}")
    if runtime.session_store is not None:
        print(f"Session: {agent.active_session_id} ({app.session_db_path})")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        while True:
            try:
                user_input = input("you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()

            if trimmed in ("exit", "quit"):
                break

            if not trimmed:
                continue

            try:
                print()
                report_turn(await run_cancellable_turn(agent, runtime.display, trimmed))
                print()
            except AgentLoopError as ex:
                runtime.display.finish()
                logger.error(f"Turn failed: {ex}")
                print(f"{_LINE_PREFIX}Error: {ex}\n")
            except Exception as ex:
                runtime.display.finish()
                logger.exception(f"Unhandled error: {ex}")
    finally:
        if runtime.session_store is not None:
            runtime.session_store.close()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
