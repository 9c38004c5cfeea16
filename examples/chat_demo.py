"""Minimal demonstration of the chat gateway with one local tool."""

from chat_gateway import create_default_service
from chat_gateway.tools.definitions import ToolSchema
from chat_gateway.tools.dispatch import FunctionToolProvider


def get_time(args):
    from datetime import datetime

    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


if __name__ == "__main__":
    tools = FunctionToolProvider([(ToolSchema(name="get_time", description="返回当前本地时间"), get_time)])
    service = create_default_service(tool_provider=tools)
    print("Providers:", service.list_providers())

    question = "现在几点了？"
    print("User:", question)
    print("Assistant: ", end="", flush=True)
    for frame in service.stream_chat_sse(question):
        print(frame, end="", flush=True)
