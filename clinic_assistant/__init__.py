"""HealthLantern clinic assistant: query understanding and reply orchestration.

Pipeline per patient message:

    classify (static rules, then LLM fallback)
      -> resolve treatments (tree flatten + exact / alias / substring match)
      -> gather context (CRM doctors, clinic info, cached web content)
      -> dispatch to the intent handler
      -> stream (metadata, content chunks, done | error)
"""
