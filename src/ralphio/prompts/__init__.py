"""Prompt and workspace templates.

Every prompt and template file ralphio writes or sends lives in
``templates.yaml`` (next to this module) and is loaded by
:class:`PromptCatalog`.
"""

from ralphio.prompts.catalog import PromptCatalog, get_catalog

__all__ = ["PromptCatalog", "get_catalog"]
