# =============================================================================
# Agents Package — Query Understanding, Retrieval and Generation
# =============================================================================
#   - classifier.py: LLM intent/topic/complexity classification
#   - reformulator.py: Action → knowledge query rewriting
#   - conversation.py: Per-session retrieval state and topic tracking
#   - search.py: Category-aware semantic search merging
#   - dynamic_retrieval.py: Tool-result triggered re-retrieval
#   - context_builder.py: Token-budgeted context assembly + prompts
#   - stream_buffer.py: Output buffering for streamed answers
#   - orchestrator.py: LangGraph retrieval graph
#   - generator.py: Blocking and streaming response generation
# =============================================================================
