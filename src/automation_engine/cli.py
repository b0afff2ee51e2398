"""
Automation Workflow Engine CLI
"""
import asyncio
import json

import click

from .config import EngineConfig, configure_logging
from .core.engine import ExecutionEngine
from .core.evaluator import ConditionEvaluator
from .core.parser import WorkflowParser
from .exceptions import WorkflowEngineError
from .integrations.actions import BuiltinActions, LocalActionDispatcher
from .integrations.notifier import LoggingNotifier
from .models.execution import ExecutionStatus
from .models.workflow import WorkflowStatus


@click.group()
@click.option('--log-level', default=None, help='Logging level (defaults to AUTOMATION_LOG_LEVEL)')
@click.pass_context
def cli(ctx, log_level):
    """Automation Workflow Engine CLI"""
    config = EngineConfig.from_env()
    if log_level:
        config.log_level = log_level.upper()
    configure_logging(config.log_level)
    ctx.obj = config


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
def validate(workflow_file):
    """Validate a workflow definition file"""
    try:
        workflow = WorkflowParser().parse_file(workflow_file)
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))

    click.echo(f"Workflow '{workflow.name or workflow.id}' is valid "
               f"({len(workflow.nodes)} nodes, {len(workflow.connections)} connections)")


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--trigger', 'trigger_json', default='{}', help='Trigger payload as a JSON object')
@click.option('--activate', is_flag=True, help='Run the workflow even if its status is not active')
@click.pass_obj
def run(config, workflow_file, trigger_json, activate):
    """Run a workflow from file and print the execution record"""
    try:
        trigger_data = json.loads(trigger_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint='--trigger')
    if not isinstance(trigger_data, dict):
        raise click.BadParameter("Trigger payload must be a JSON object", param_hint='--trigger')

    try:
        workflow = WorkflowParser().parse_file(workflow_file)
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))

    if activate:
        workflow.status = WorkflowStatus.ACTIVE

    async def _run():
        actions = LocalActionDispatcher()
        BuiltinActions.register_all(actions)
        engine = ExecutionEngine(
            config=config or EngineConfig(),
            actions=actions,
            notifier=LoggingNotifier()
        )
        await engine.workflow_repo.save(workflow)
        return await engine.execute(workflow, trigger_data)

    try:
        execution = asyncio.run(_run())
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))

    click.echo(json.dumps(execution.to_dict(), ensure_ascii=False, indent=2, default=str))
    if execution.status == ExecutionStatus.FAILED:
        raise SystemExit(1)


@cli.command()
def operators():
    """List the operators available in structured conditions"""
    info = ConditionEvaluator().get_operator_info()
    for category, entries in info.items():
        click.echo(f"{category}:")
        for name, details in entries.items():
            click.echo(f"  {name:<24} {details.get('label', '')}")


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
