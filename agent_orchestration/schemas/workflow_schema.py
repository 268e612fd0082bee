# agent_orchestration/schemas/workflow_schema.py
"""
JSON Schema for workflow plans returned by the completion service
"""
CONDITION_SCHEMA = {
    "type": "object",
    "properties": {
        "field": {"type": "string", "minLength": 1},
        "operator": {
            "type": "string",
            "enum": ["equals", "not_equals", "contains", "greater_than", "less_than"]
        },
        "value": {},
        "nextStepId": {"type": ["string", "null"]}
    },
    "required": ["field", "operator"]
}

RETRY_POLICY_SCHEMA = {
    "type": "object",
    "properties": {
        "maxRetries": {"type": "integer", "minimum": 0},
        "backoffStrategy": {"type": "string", "enum": ["linear", "exponential"]},
        "baseDelay": {"type": "number", "minimum": 0},
        "maxDelay": {"type": "number", "minimum": 0}
    }
}

PLAN_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "description": {"type": "string"},
        "confidence": {"type": "number"},
        "steps": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "agentId": {"type": "string"},
                    "taskType": {"type": "string"},
                    "input": {"type": "object"},
                    "conditions": {"type": "array", "items": CONDITION_SCHEMA},
                    "parallel": {"type": "boolean"},
                    "humanApprovalRequired": {"type": "boolean"},
                    "retryPolicy": {"anyOf": [RETRY_POLICY_SCHEMA, {"type": "null"}]}
                },
                "required": ["agentId", "taskType"]
            }
        }
    },
    "required": ["steps"]
}
