"""上游流式响应的记录切分。

上游以字节流返回，按换行符划分记录；一次读取可能只包含半条记录，
甚至半个 UTF-8 字符。RecordBuffer 在多次读取之间缓存尾部残片，
只把完整的记录交给适配器解析。
"""

import codecs
import json
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, List, Optional, Union

DONE_SENTINEL = "[DONE]"


class RecordBuffer:
    """按分隔符切分字节流，保留未完成的尾部片段。"""

    def __init__(self, delimiter: str = "\n", encoding: str = "utf-8"):
        self._delimiter = delimiter
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        """写入一段数据，返回其中已完整的记录（不含分隔符）。"""

        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            return []
        self._pending += text
        parts = self._pending.split(self._delimiter)
        self._pending = parts.pop()
        return [p.rstrip("\r") for p in parts]

    def flush(self) -> List[str]:
        """流结束时取出最后一条没有分隔符结尾的记录。"""

        self._pending += self._decoder.decode(b"", final=True)
        rest, self._pending = self._pending.rstrip("\r"), ""
        return [rest] if rest.strip() else []

    @property
    def pending(self) -> str:
        return self._pending


@dataclass
class SseRecord:
    """一条 data 记录。payload 为解析后的 JSON；done 表示收到 [DONE] 哨兵。"""

    raw: str
    payload: Any = None
    done: bool = False


def iter_lines(chunks: Iterable[Union[bytes, str]], buffer: Optional[RecordBuffer] = None) -> Iterator[str]:
    buffer = buffer or RecordBuffer()
    for chunk in chunks:
        for line in buffer.feed(chunk):
            yield line
    for line in buffer.flush():
        yield line


def data_of(line: str) -> Optional[str]:
    """提取 SSE 行中的数据部分；空行、注释和 event:/id: 等帧字段返回 None。"""

    stripped = line.strip()
    if not stripped or stripped.startswith(":"):
        return None
    if stripped.startswith("data:"):
        return stripped[5:].strip() or None
    if stripped.startswith(("event:", "id:", "retry:")):
        return None
    # 部分兼容实现直接输出裸 JSON 行（NDJSON）
    return stripped


def parse_record(data: str) -> SseRecord:
    """解析一条 data 记录，JSON 格式错误时抛出 json.JSONDecodeError。"""

    if data == DONE_SENTINEL:
        return SseRecord(raw=data, done=True)
    return SseRecord(raw=data, payload=json.loads(data))
