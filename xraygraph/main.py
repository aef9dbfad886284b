"""xraygraph 批处理入口。

读取一份项目文件或 xray 配置 → 验证 → 编译 → 写出 → (可选) 模拟。
XRAYGRAPH_SIMULATE 格式 (每行一条请求，协议可省略，默认 tcp):
    in1|example.com:443/tcp
    socks-in|google.com:80
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Optional

from xraygraph.matching import TrafficRequest
from xraygraph.models import Edge, Node
from xraygraph.parsers.dispatcher import LoadedGraph, load_document, parse_document
from xraygraph.simulation import run_simulation
from xraygraph.validation import ValidationResult, validate_graph
from xraygraph.xray_output import ExportResult, config_to_json, config_to_yaml, export_config

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("xraygraph")


def parse_sim_line(line: str) -> Optional[TrafficRequest]:
    """解析 inboundTag|domain:port/protocol，格式不对返回 None。"""
    line = line.strip()
    if "|" not in line:
        return None
    inbound_tag, target = (s.strip() for s in line.split("|", 1))

    protocol = "tcp"
    if "/" in target:
        target, protocol = target.rsplit("/", 1)

    port = 443
    if ":" in target:
        target, port_raw = target.rsplit(":", 1)
        if not port_raw.isdigit():
            return None
        port = int(port_raw)

    if not inbound_tag or not target:
        return None
    return TrafficRequest(domain=target, protocol=protocol.lower() or "tcp", port=port, inbound_tag=inbound_tag)


def log_validation(result: ValidationResult) -> None:
    for issue in result.errors:
        logger.error("[%s] %s", issue.node_id or "-", issue.message)
    for issue in result.warnings:
        logger.warning("[%s] %s", issue.node_id or "-", issue.message)
    for issue in result.infos:
        logger.info("[%s] %s", issue.node_id or "-", issue.message)
    logger.info(
        "验证结果: %s (%d 错误, %d 警告, %d 提示)",
        "通过" if result.valid else "未通过",
        len(result.errors), len(result.warnings), len(result.infos),
    )


def write_exports(results: list[ExportResult], output_dir: str, fmt: str = "json") -> list[str]:
    """把编译结果写入 output_dir，返回写出的文件路径。"""
    os.makedirs(output_dir, exist_ok=True)
    written = []
    for result in results:
        if fmt == "yaml":
            filename = result.filename.rsplit(".", 1)[0] + ".yaml"
            content = config_to_yaml(result.config)
        else:
            filename = result.filename
            content = config_to_json(result.config) + "\n"
        path = os.path.join(output_dir, filename)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        written.append(path)
    return written


def simulate_requests(lines: list[str], nodes: list[Node], edges: list[Edge]) -> None:
    for line in lines:
        request = parse_sim_line(line)
        if request is None:
            logger.warning("无法解析模拟请求: %r", line)
            continue
        result = run_simulation(request, nodes, edges)
        route = " → ".join(step.tag for step in result.path) or "-"
        log = logger.info if result.success else logger.warning
        log("模拟 %s: %s | %s", line.strip(), route, result.explanation)


async def run() -> None:
    # ---- 读取环境变量 ----
    source = os.environ.get("XRAYGRAPH_INPUT", "").strip()
    if not source:
        logger.error("XRAYGRAPH_INPUT 环境变量为空")
        sys.exit(1)

    output_dir = os.environ.get("XRAYGRAPH_OUTPUT_DIR", "./out")
    fmt = os.environ.get("XRAYGRAPH_FORMAT", "json").lower()
    mode = os.environ.get("XRAYGRAPH_MODE", "").strip() or None
    timeout = int(os.environ.get("XRAYGRAPH_TIMEOUT", "30"))
    sim_raw = os.environ.get("XRAYGRAPH_SIMULATE", "")

    if fmt not in ("json", "yaml"):
        logger.warning("未知输出格式 %s，改用 json", fmt)
        fmt = "json"

    # ---- 1. 载入 ----
    content = await load_document(source, timeout)
    if not content:
        logger.error("未能读取输入: %s", source)
        sys.exit(1)

    try:
        graph: LoadedGraph = parse_document(content)
    except ValueError as e:
        logger.error("解析失败: %s", e)
        sys.exit(1)

    logger.info("载入 %d 个节点, %d 条边", len(graph.nodes), len(graph.edges))
    for warning in graph.warnings:
        logger.warning("导入警告: %s", warning)

    # ---- 2. 验证 (不阻止编译) ----
    log_validation(validate_graph(graph.nodes, graph.edges))

    # ---- 3. 编译 & 写出 ----
    try:
        results = export_config(graph.nodes, graph.edges, graph.servers, mode=mode)
        for path in write_exports(results, output_dir, fmt):
            logger.info("已写出 → %s", path)
    except Exception as e:
        logger.error("编译失败: %s", e, exc_info=True)

    # ---- 4. 模拟 ----
    sim_lines = [l for l in sim_raw.splitlines() if l.strip()]
    if sim_lines:
        simulate_requests(sim_lines, graph.nodes, graph.edges)

    logger.info("xraygraph 全部完成")


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
