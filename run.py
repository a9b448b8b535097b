"""
Main CLI entry point for stepflow
Usage: python run.py config/pipelines/example.yaml [name=value ...]
"""
import sys
import logging

import yaml
from dotenv import load_dotenv

from stepflow.utils.config import load_config, setup_logging
from stepflow.utils.exceptions import ConfigurationError
from stepflow.orchestrator import PipelineOrchestrator

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)


def parse_overrides(args):
    """Turn name=value arguments into variable overrides (values parsed as YAML)."""
    overrides = {}
    for arg in args:
        if "=" not in arg:
            raise ValueError(f"Variable override must look like name=value, got: {arg}")
        name, value = arg.split("=", 1)
        overrides[name.strip()] = yaml.safe_load(value) if value else ""
    return overrides


def main():
    """Main execution function"""

    try:
        config = load_config()
        setup_logging(config)
    except Exception as e:
        print(f"ERROR: Failed to load configuration: {e}")
        sys.exit(1)

    if len(sys.argv) < 2:
        print("Usage: python run.py <pipeline.yaml> [name=value ...]")
        print("Example: python run.py config/pipelines/example.yaml topic=\"battery storage\"")
        sys.exit(1)

    definition_path = sys.argv[1]

    try:
        variables = parse_overrides(sys.argv[2:])
    except ValueError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    orchestrator = PipelineOrchestrator(config)
    try:
        result = orchestrator.run(definition_path, variables=variables)
        paths = orchestrator.save_outputs(result)

        logger.info(f"📊 Result: {paths['result']}")
        logger.info(f"📝 Report: {paths['report']}")

        if result.succeeded:
            print(f"\n✅ Pipeline {result.name} completed (${result.total_cost_usd:.4f}).")
        else:
            print(f"\n❌ Pipeline {result.name} failed: {result.error}")
            sys.exit(2)

    except FileNotFoundError as e:
        logger.error(f"Pipeline definition not found: {e}")
        print(f"\nERROR: {e}")
        sys.exit(1)

    except ConfigurationError as e:
        logger.error(f"Invalid pipeline definition: {e}")
        print("\nERROR: invalid pipeline definition")
        for problem in e.errors or [str(e)]:
            print(f"  - {problem}")
        sys.exit(1)

    finally:
        orchestrator.close()


if __name__ == "__main__":
    main()
