"""
Agents Package

- llm_client: shared Anthropic client used by agents and inference columns
- agent_loop: agentic loop with tool support (used by AgentService)
"""
