"""Chat model catalogue, LangChain model factory, streaming step and tracing."""
