"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale>/ 目录读取 <name>_system.md，
用于新会话首个回合前补充的 system 消息。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


def load_system_prompt(name: str = "default", locale: str = "en") -> str:
    """根据提示词名称和语言加载系统提示词文本。

    指定语言下没有对应文件时回退到英文版本。
    """

    fname = PROMPTS_DIR / locale / f"{name}_system.md"
    if not fname.exists():
        fname = PROMPTS_DIR / "en" / f"{name}_system.md"
    return fname.read_text(encoding="utf-8").strip()
