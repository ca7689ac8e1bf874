"""Turn orchestration: models, tools, truncation, sanitizers, runner, streaming, HTTP."""
