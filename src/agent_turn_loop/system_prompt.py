def build_system_prompt(working_directory: str | None = None, tool_names: list[str] | None = None) -> str:
    prompt = """\
You are a helpful AI assistant with access to tools. Use them to inspect and \
change files, run commands and fetch web pages on the user's behalf.

When a task needs several independent tool calls, request them together in one \
response; they run concurrently and their results come back in the order you \
asked for them.

If a tool call fails, read the error message carefully and try a different approach.

Be concise in your responses. When you've completed a task, briefly summarize what you did."""

    if tool_names:
        prompt += f"\n\nAvailable tools: {', '.join(sorted(tool_names))}."

    if working_directory:
        prompt += f"""

The working directory is: {working_directory}
File paths are resolved against it and may not point outside it. When the user \
references a file by name, pass the relative name to the tools."""

    return prompt
