"""输入文档的读取与格式分发：项目文件 or xray 配置。"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import aiohttp

from xraygraph.models import Edge, Node, ProjectMode, Server
from xraygraph.parsers.project import import_project_file, is_project_document
from xraygraph.parsers.xray import ConfigParseError, decode_document, import_xray_config

logger = logging.getLogger(__name__)


@dataclass
class LoadedGraph:
    nodes: list[Node]
    edges: list[Edge]
    servers: list[Server] = field(default_factory=list)
    mode: ProjectMode = ProjectMode.CLIENT
    name: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


async def load_document(source: str, timeout: int = 30) -> str:
    """读取本地文件或 http(s) URL 的内容，失败返回空串。"""
    if source.startswith(("http://", "https://")):
        return await _fetch(source, timeout)

    try:
        with open(source, encoding="utf-8") as f:
            return f.read()
    except OSError as e:
        logger.error("读取文件失败: %s (%s)", source, type(e).__name__)
        return ""


def parse_document(content: str) -> LoadedGraph:
    """自动检测格式并解析为图。无法识别时抛出 ConfigParseError。"""
    document = decode_document(content)

    if is_project_document(document):
        logger.info("检测到项目文件格式")
        project = import_project_file(document)
        return LoadedGraph(
            nodes=project.nodes,
            edges=project.edges,
            servers=project.servers,
            mode=project.mode,
            name=project.name,
        )

    if "inbounds" in document or "outbounds" in document:
        logger.info("检测到 xray 配置格式")
        result = import_xray_config(document)
        return LoadedGraph(
            nodes=result.nodes,
            edges=result.edges,
            mode=result.mode,
            warnings=result.summary.warnings,
        )

    raise ConfigParseError("Unrecognized document: expected a project file or an xray config.")


async def _fetch(url: str, timeout: int) -> str:
    """抓取 URL 内容，返回文本。"""
    try:
        ct = aiohttp.ClientTimeout(total=timeout)
        async with aiohttp.ClientSession(timeout=ct) as session:
            async with session.get(url) as resp:
                resp.raise_for_status()
                return await resp.text()
    except Exception as e:
        logger.error("抓取配置失败: %s", type(e).__name__)
        return ""
