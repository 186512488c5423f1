"""
Base class for banking tools.

Tool parameters are declared the same way for every tool:
    params = {"name": {"type": "string", "required": True, "description": ...}}
The registry checks required params before execute() runs and renders the
declaration as JSON schema for the model.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List

_JSON_TYPES = {"string", "number", "integer", "boolean", "object", "array"}


class BankingTool(ABC):
    name: str = ""
    description: str = ""
    params: Dict[str, Dict[str, Any]] = {}
    read_only: bool = True

    @property
    def required_params(self) -> List[str]:
        return [p for p, spec in self.params.items() if spec.get("required")]

    def parameters_schema(self) -> Dict[str, Any]:
        properties: Dict[str, Any] = {}
        for pname, spec in self.params.items():
            ptype = spec.get("type", "string")
            prop: Dict[str, Any] = {"type": ptype if ptype in _JSON_TYPES else "string"}
            if spec.get("description"):
                prop["description"] = spec["description"]
            if spec.get("enum"):
                prop["enum"] = list(spec["enum"])
            properties[pname] = prop
        schema: Dict[str, Any] = {"type": "object", "properties": properties}
        if self.required_params:
            schema["required"] = self.required_params
        return schema

    def descriptor(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters_schema()}

    @abstractmethod
    async def execute(self, params: Dict[str, Any], *, user_id: str) -> Dict[str, Any]:
        """Run the tool. Raise ToolExecutionError (or anything else) on failure."""
