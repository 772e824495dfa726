"""
CLI 模块

命令行接口实现。
"""

import asyncio
import json
from pathlib import Path
from typing import Optional, Tuple

import click
import toml
import yaml
from loguru import logger

from modelfetch import manifest as manifest_loader
from modelfetch.events import EventType, ModelEvent
from modelfetch.exceptions import ModelFetchError
from modelfetch.logger import setup_logger
from modelfetch.manager import ModelManager
from modelfetch.models import ModelFetchConfig, ModelPhase
from modelfetch.utils import format_bytes


def load_config(config_path: str) -> dict:
    """加载配置文件"""
    path = Path(config_path)

    if not path.exists():
        raise click.ClickException(f"配置文件不存在: {config_path}")

    suffix = path.suffix.lower()

    if suffix == ".toml":
        return toml.load(config_path)
    elif suffix == ".json":
        return json.loads(path.read_text(encoding="utf-8"))
    elif suffix in (".yaml", ".yml"):
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    else:
        raise click.ClickException(f"不支持的配置文件格式: {suffix}")


def build_config(
    config_path: Optional[str],
    manifest: Optional[str],
    resource_dir: Optional[str],
) -> ModelFetchConfig:
    """合并配置文件和命令行参数"""
    data = load_config(config_path) if config_path else {}
    try:
        config = ModelFetchConfig.from_dict(data)
    except ModelFetchError as e:
        raise click.ClickException(str(e))

    # 配置文件中的相对清单路径相对于配置文件所在目录
    if config_path and isinstance(config.manifest, str):
        manifest_path = Path(config.manifest)
        if not manifest_path.is_absolute():
            config.manifest = str(Path(config_path).parent / manifest_path)

    if manifest:
        config.manifest = manifest
    if resource_dir:
        config.storage.resource_dir = resource_dir
    return config


def _create_manager(config: ModelFetchConfig) -> ModelManager:
    try:
        return ModelManager.from_config(config)
    except ModelFetchError as e:
        raise click.ClickException(str(e))


def _log_progress(event: ModelEvent):
    logger.info(f"[进度] {event.model_id}: {event.data.get('progress', 0):.1f}%")


@click.group()
@click.option(
    "-c", "--config", "config_path", type=click.Path(exists=True), help="配置文件路径"
)
@click.option("-m", "--manifest", type=click.Path(exists=True), help="模型清单路径")
@click.option("-d", "--resource-dir", help="资源目录（默认为平台缓存目录）")
@click.option("--debug", is_flag=True, help="启用调试模式")
@click.option("--log-file", type=click.Path(dir_okay=False), help="额外写入的日志文件")
@click.version_option(version="0.1.0")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    manifest: Optional[str],
    resource_dir: Optional[str],
    debug: bool,
    log_file: Optional[str],
):
    """ModelFetch - 模型下载、校验与安装工具"""
    config = build_config(config_path, manifest, resource_dir)
    setup_logger(
        level="DEBUG" if debug else config.log_level,
        log_file=log_file or config.log_file,
    )
    ctx.obj = config


@main.command("list")
@click.pass_obj
def list_models(config: ModelFetchConfig):
    """列出清单中的模型"""
    manager = _create_manager(config)
    for entry in manager.table.values():
        kind = "archive" if entry.archive else "file"
        name = f"  {entry.name}" if entry.name else ""
        click.echo(f"{entry.id}\t{kind}\t{format_bytes(entry.size_bytes)}{name}")


@main.command()
@click.argument("model_ids", nargs=-1)
@click.option("--json", "as_json", is_flag=True, help="以 JSON 输出")
@click.pass_obj
def status(config: ModelFetchConfig, model_ids: Tuple[str, ...], as_json: bool):
    """查看模型状态"""

    async def run():
        async with _create_manager(config) as manager:
            if model_ids:
                return [manager.query_status(model_id) for model_id in model_ids]
            return list(manager.statuses().values())

    try:
        states = asyncio.run(run())
    except ModelFetchError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps([s.to_dict() for s in states], ensure_ascii=False, indent=2))
        return
    for state in states:
        click.echo(f"{state.model_id}\t{state.phase.value}\t{state.progress:.1f}%")


@main.command()
@click.argument("model_ids", nargs=-1, required=True)
@click.pass_obj
def download(config: ModelFetchConfig, model_ids: Tuple[str, ...]):
    """下载并安装模型"""

    async def run():
        manager = _create_manager(config)
        manager.events.subscribe(_log_progress, EventType.PROGRESS)
        async with manager:
            return await asyncio.gather(
                *(manager.download(model_id) for model_id in model_ids),
                return_exceptions=True,
            )

    results = asyncio.run(run())

    failed = []
    for model_id, result in zip(model_ids, results):
        if isinstance(result, ModelFetchError):
            click.echo(f"{model_id}\tfailed\t{result}")
            failed.append(model_id)
        elif isinstance(result, BaseException):
            raise result
        else:
            click.echo(f"{model_id}\t{result.phase.value}")
            if result.phase != ModelPhase.READY:
                failed.append(model_id)

    if failed:
        raise click.ClickException(f"下载未完成: {', '.join(failed)}")


@main.command()
@click.argument("model_id")
@click.pass_obj
def delete(config: ModelFetchConfig, model_id: str):
    """删除已安装的模型和暂存文件"""

    async def run():
        async with _create_manager(config) as manager:
            await manager.delete_model(model_id)

    try:
        asyncio.run(run())
    except ModelFetchError as e:
        raise click.ClickException(str(e))
    click.echo(f"{model_id}\tdeleted")


@main.command()
@click.argument("model_id")
@click.pass_obj
def path(config: ModelFetchConfig, model_id: str):
    """输出已就绪模型的路径"""

    async def run():
        async with _create_manager(config) as manager:
            return manager.get_model_path(model_id)

    try:
        model_path = asyncio.run(run())
    except ModelFetchError as e:
        raise click.ClickException(str(e))

    if model_path is None:
        raise click.ClickException(f"模型尚未就绪: {model_id}")
    click.echo(str(model_path))


@main.command()
@click.argument("artifact", type=click.Path(exists=True, dir_okay=False))
@click.option("--id", "model_id", help="模型 id（默认为文件名）")
@click.option("--archive", is_flag=True, help="文件是 tar 归档")
def describe(artifact: str, model_id: Optional[str], archive: bool):
    """为本地文件生成清单条目"""
    try:
        entry = manifest_loader.describe_artifact(artifact, model_id, archive)
    except ModelFetchError as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps(entry, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
