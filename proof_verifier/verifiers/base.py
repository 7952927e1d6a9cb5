from typing import Any


class Verifier:
    async def verify(self, evidence: Any, *args, **kwargs) -> Any:
        raise NotImplementedError
