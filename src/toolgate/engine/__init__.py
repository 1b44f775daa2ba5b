"""Decision logic: tool invocation policies and tool-result trust."""
