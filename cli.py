"""
命令行入口
    python cli.py chunk novel.txt                       # 查看分块结果
    python cli.py route character_analysis              # 查看某任务的路由决策
    python cli.py run novel.txt -o out.json             # 运行完整流水线（在控制台中审核）
    python cli.py run novel.txt --resume                # 从已保存的阶段产出继续
    python cli.py config set review_gate.enabled false  # 写入 user_config.yaml
"""
import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict

import yaml

from config import load_environment
from config.loader import load_config, set_user_config_value
from core.exceptions import PipelineError, StageRejectedError
from core.logger import setup_logging
from core.schemas import Checkpoint
from infra.utils.text_splitters import get_text_splitter
from services.model_router import ModelRouter
from services.workflow import PipelineOrchestrator

logger = logging.getLogger(__name__)

DECISION_KEYS = {"a": "approve", "r": "reject", "m": "modify"}

def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()

def make_console_reviewer(orchestrator: PipelineOrchestrator):
    """在控制台中逐个审核检查点的通知回调"""

    async def review_in_console(checkpoint: Checkpoint, priority=None, description=None):
        print(f"\n===== 待审核: {checkpoint.stage} ({checkpoint.id}) =====")
        print(json.dumps(checkpoint.data, ensure_ascii=False, indent=2))
        answer = await asyncio.to_thread(input, "通过(a) / 驳回(r) / 修改(m，随后输入 JSON): ")
        decision = DECISION_KEYS.get(answer.strip().lower()[:1], "approve")

        modifications = None
        while decision == "modify" and modifications is None:
            raw = await asyncio.to_thread(input, "修改内容 (JSON): ")
            try:
                modifications = json.loads(raw)
            except json.JSONDecodeError as e:
                print(f"JSON 格式错误: {e}，请重新输入。")
        notes = await asyncio.to_thread(input, "备注 (可留空): ")
        orchestrator.review_gate.review(checkpoint.id, decision, notes=notes or None, modifications=modifications)

    return review_in_console

def log_progress(stage: str, percent: float, message: str):
    logger.info(f"[{percent:5.1f}%] {stage}: {message}")

def summarize_run(orchestrator: PipelineOrchestrator) -> dict:
    run = orchestrator.current_run
    return {
        "stages": {stage: outcome.data for stage, outcome in run.stages.items()},
        "resumed_stages": [stage for stage, outcome in run.stages.items() if outcome.resumed],
        "halted_stage": run.halted_stage,
        "cost_breakdown": run.cost_breakdown,
        "total_cost": run.total_cost,
        "review_report": asdict(orchestrator.review_gate.generate_report()),
    }

def cmd_chunk(args, full_config):
    chunker = get_text_splitter(full_config)
    for chunk in chunker.chunk(_read_text(args.input)):
        meta = chunk.metadata
        print(f"[{chunk.id}] {meta.word_count}字 {meta.chunk_type} 角色={meta.characters} 场景={meta.scene_hint or '-'}")
        print(f"    {chunk.content[:60]}...")

def cmd_route(args, full_config):
    router = ModelRouter.from_config(full_config)
    decision = router.get_routing_decision(args.task_type, args.prompt_length, args.model)
    print(json.dumps(asdict(decision), ensure_ascii=False, indent=2))

def cmd_run(args, full_config) -> int:
    if args.auto_approve:
        full_config["review_gate"] = {**(full_config.get("review_gate") or {}), "enabled": False}

    orchestrator = PipelineOrchestrator.from_config(full_config)
    orchestrator.review_gate.notifier = make_console_reviewer(orchestrator)
    orchestrator.progress = log_progress

    exit_code = 0
    try:
        asyncio.run(orchestrator.run(_read_text(args.input), resume=args.resume))
    except StageRejectedError as e:
        logger.warning(f"流水线在阶段 {e.stage} 停止: {e}")
    except PipelineError as e:
        # 已通过的阶段仍然输出
        logger.error(f"流水线在阶段 {orchestrator.current_run.halted_stage} 出错: {e}", exc_info=True)
        exit_code = 1

    output = json.dumps(summarize_run(orchestrator), ensure_ascii=False, indent=2)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(output)
        logger.info(f"结果已写入 {args.output}")
    else:
        print(output)
    return exit_code

def cmd_config_set(args, full_config):
    value = yaml.safe_load(args.value)
    set_user_config_value(args.key, value, args.user_config)
    print(f"{args.key} = {value!r}")

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="小说剧本解析流水线")
    parser.add_argument("--config", help="基础配置文件路径 (默认 config.yaml)")
    parser.add_argument("--user-config", help="用户配置文件路径 (默认 user_config.yaml)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    chunk_parser = subparsers.add_parser("chunk", help="对原文做语义分块")
    chunk_parser.add_argument("input", help="原文文件 (UTF-8)")
    chunk_parser.set_defaults(func=cmd_chunk)

    route_parser = subparsers.add_parser("route", help="查看任务的模型路由决策")
    route_parser.add_argument("task_type")
    route_parser.add_argument("--prompt-length", type=int, default=4000)
    route_parser.add_argument("--model", help="指定模型 ID")
    route_parser.set_defaults(func=cmd_route)

    run_parser = subparsers.add_parser("run", help="运行完整流水线")
    run_parser.add_argument("input", help="原文文件 (UTF-8)")
    run_parser.add_argument("-o", "--output", help="结果输出文件 (JSON)")
    run_parser.add_argument("--auto-approve", action="store_true", help="关闭人工审核，所有阶段自动通过")
    run_parser.add_argument("--resume", action="store_true", help="从已保存的阶段产出继续 (需启用 persistence)")
    run_parser.set_defaults(func=cmd_run)

    config_parser = subparsers.add_parser("config", help="修改用户配置")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    set_parser = config_subparsers.add_parser("set", help="设置一个配置项，值按 YAML 解析")
    set_parser.add_argument("key", help="点分隔的键路径，例如 review_gate.enabled")
    set_parser.add_argument("value")
    set_parser.set_defaults(func=cmd_config_set)

    return parser

def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    load_environment()
    full_config = load_config(args.config, args.user_config)

    try:
        return args.func(args, full_config) or 0
    except PipelineError as e:
        logger.error(f"执行失败: {e}", exc_info=True)
        return 1

if __name__ == "__main__":
    sys.exit(main())
