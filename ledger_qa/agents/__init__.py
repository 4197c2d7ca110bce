# =============================================================================
# Agents Package: LangGraph Orchestration
# =============================================================================
#   - orchestrator.py: question → answer graph
#     (load_history → assemble_context → generate → save_history)
#   - policy.py: the system policy prompt and the fixed refusal message
# =============================================================================
