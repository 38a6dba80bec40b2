"""Tool-use grammar prompt section."""

TOOL_USE_GRAMMAR = """
You can call external tools.  To call one, write a block in exactly this form
anywhere in your reply:

<tool_use>
  <name>TOOL_NAME</name>
  <arguments>{"param": "value"}</arguments>
</tool_use>

Rules:

1. ONE BLOCK PER CALL
   Each call gets its own <tool_use> block.  Several blocks in one reply are
   executed in the order you write them.

2. ARGUMENTS ARE A JSON OBJECT
   The <arguments> body must be a single JSON object matching the tool's
   input schema.  Use {} when the tool takes no arguments.

3. STOP AFTER CALLING
   Once you have written your tool blocks, stop.  The results arrive in the
   next message as "Here is the result of tool use `name`:".  Do not guess
   what a tool will return.

4. ERRORS
   A result starting with "Error [category]" means the call failed.  Fix
   parameter errors before retrying; report other failures to the user.

5. ONLY LISTED TOOLS
   Never invent tool names.  If no listed tool fits, answer directly.
"""
