import argparse
import json
import logging
import sys

from testflow_engine.config.settings import Settings, load_settings
from testflow_engine.executor.flow_executor import FlowRunner
from testflow_engine.models.flow import EnvironmentContext, FlowDefinition
from testflow_engine.models.run import RunStatus
from testflow_engine.registry.endpoint_registry import EndpointRegistry
from testflow_engine.registry.loader import load_from_yaml
from testflow_engine.utils.exceptions import ConfigurationError


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.logging.level.upper(), format=settings.logging.format)


def parse_params(pairs: list[str]) -> dict:
    """``k=v`` pairs; values that parse as JSON keep their type."""
    params = {}
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep or not name:
            raise ValueError(f"Expected NAME=VALUE, got: {pair}")
        try:
            params[name] = json.loads(raw)
        except ValueError:
            params[name] = raw
    return params


def cmd_serve(args, settings: Settings):
    import uvicorn
    from testflow_engine.api.app import create_app

    app = create_app(endpoints_dir=args.endpoints_dir, settings=settings)
    uvicorn.run(app, host=args.host or settings.server.host, port=args.port or settings.server.port)


def cmd_run(args, settings: Settings):
    with open(args.flow) as f:
        data = json.load(f)
    flow = FlowDefinition.model_validate(data)

    registry = EndpointRegistry()
    if args.endpoints_dir:
        registry.load_directory(args.endpoints_dir)
    for path in args.endpoints:
        for endpoint in load_from_yaml(path):
            registry.register(endpoint)

    environment = None
    if args.environment:
        with open(args.environment) as f:
            environment = EnvironmentContext.model_validate(json.load(f))

    preferences = settings.execution.model_copy()
    if args.sequential:
        preferences.parallel_execution = False
    if args.continue_on_error:
        preferences.stop_on_error = False

    try:
        parameters = parse_params(args.param)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        sys.exit(2)

    runner = FlowRunner(preferences=preferences)
    try:
        result = runner.run(flow, registry.get_endpoint_map(), environment, parameters)
    except ConfigurationError as e:
        print(f"Cannot run flow: {e}", file=sys.stderr)
        sys.exit(2)

    print(json.dumps(result.model_dump(mode="json"), indent=2, default=str))
    if result.status != RunStatus.COMPLETED or not result.success:
        sys.exit(1)


def cmd_endpoints(args, settings: Settings):
    registry = EndpointRegistry()
    registry.load_directory(args.endpoints_dir or settings.server.endpoints_dir)
    for endpoint in registry.list_endpoints():
        print(f"{endpoint.id}\t{endpoint.api_id}\t{endpoint.method.upper()} {endpoint.path}")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(prog="tfe", description="Test Flow Engine")
    parser.add_argument("--config", help="Path to a YAML config file")
    sub = parser.add_subparsers(dest="command")

    serve_p = sub.add_parser("serve", help="Start the web server")
    serve_p.add_argument("--host")
    serve_p.add_argument("--port", type=int)
    serve_p.add_argument("--endpoints-dir")

    run_p = sub.add_parser("run", help="Run a flow from JSON and print the result")
    run_p.add_argument("flow", help="Path to flow JSON file")
    run_p.add_argument("--endpoints-dir", help="Directory of endpoint definition files")
    run_p.add_argument("--endpoints", action="append", default=[], help="Endpoint definition file (repeatable)")
    run_p.add_argument("--environment", help="Path to environment JSON file")
    run_p.add_argument("--param", action="append", default=[], metavar="NAME=VALUE")
    run_p.add_argument("--sequential", action="store_true", help="Run endpoints within a step one by one")
    run_p.add_argument("--continue-on-error", action="store_true")

    ep_p = sub.add_parser("endpoints", help="List registered endpoint definitions")
    ep_p.add_argument("--endpoints-dir")

    args = parser.parse_args(argv)
    try:
        settings = load_settings(args.config)
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)
    configure_logging(settings)

    if args.command == "serve":
        cmd_serve(args, settings)
    elif args.command == "run":
        cmd_run(args, settings)
    elif args.command == "endpoints":
        cmd_endpoints(args, settings)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
