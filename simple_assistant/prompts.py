"""Fixed prompts sent to the model."""

SYSTEM_PROMPT = """You are a helpful AI assistant integrated into the user's desktop.
You can help with general tasks and system administration.
If you need to run a terminal command to help the user (e.g., checking system status, logs, or performing a task),
wrap the command in this specific tag: [RUN: command_here].
When you provide a command, explain what it does first.
Example: To list files, you would say: "You can list files using: [RUN: ls -la]\""""

DEVICE_INFO_HEADER = "User System Info:"

REQUEST_CANCELLED_TEXT = "_Request cancelled._"
MISSING_KEY_TEXT = "**API Key missing!** Please go to settings."
NO_OUTPUT_TEXT = "Done (no output)"


def command_output_message(command: str, exit_status: int, output: str) -> str:
    return f'COMMAND OUTPUT for "{command}" (exit status {exit_status}):\n{output}'


def command_timeout_message(command: str, timeout_seconds: int) -> str:
    return f'COMMAND TIMEOUT for "{command}": Exceeded {timeout_seconds} seconds'


def command_cancelled_message(command: str) -> str:
    return f'COMMAND CANCELLED for "{command}"'


def command_error_message(command: str, error: str) -> str:
    return f'COMMAND ERROR for "{command}":\n{error}'
