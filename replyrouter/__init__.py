"""Reply Router: layered reply pipeline for multi-tenant shop chatbots.

Architecture Overview
=====================

Every inbound customer message passes three stages:

1. **Guards** (``services/guard.py``): duplicate-delivery claim, fixed-window
   rate limit and the off-hours notice cooldown.  All three sit on single-key
   atomic Redis primitives and fail open when the store is unreachable.

2. **Pipeline** (``pipeline/orchestrator.py``): context extraction (layer 0),
   then deterministic rule layers 1-16 in the tenant's configured order.  The
   first layer that produces a reply wins.

3. **Agent** (``agent/loop.py``): when no rule layer matches, a LangGraph
   loop lets the chat model call five pure tools against the tenant's data,
   capped at ``AGENT_MAX_ITERATIONS`` completions.  If the agent is absent or
   its provider fails, the tenant's static fallback message answers
   (layer 18).

Routing: guards → layer 0 → rule layers (first match wins) → agent → fallback

Key Design Decisions
--------------------
- **Tenants as data**: catalogs, scripts, intents and the trigger table of
  each tenant are JSON bundles validated into frozen pydantic models
  (``business/``).  The orchestrator holds no business-specific text.
- **Providers**: Anthropic (default) or OpenAI through LangChain chat models
  with the tool schemas bound; both are interchangeable for the loop.
- **Side effects off the reply path**: admin flags, funnel events and token
  usage are submitted to a background dispatcher after the reply exists.
- **Injected store**: one ``redis.Redis`` client is built at startup and
  handed to every store-backed component.
- **Dual Interface**: FastAPI server (production) + CLI chat loop (development).

Package Structure
-----------------
- ``replyrouter/config.py``: configuration from environment variables / SSM
- ``replyrouter/business/``: tenant models, bundles and registry
- ``replyrouter/pipeline/``: context extraction, intent scoring, rule layers, orchestrator
- ``replyrouter/agent/``: system prompt, tools and the LangGraph loop
- ``replyrouter/services/``: Redis stores, guards, trackers, metrics, dispatch
- ``replyrouter/handler.py``: one inbound message end to end
- ``replyrouter/server.py`` / ``replyrouter/api/``: FastAPI application
- ``replyrouter/main.py``: CLI chat interface
"""
