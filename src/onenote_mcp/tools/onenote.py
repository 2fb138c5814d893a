"""OneNote tools exposed over MCP.

Each handler validates its arguments, asks the credential lifecycle
manager for a Graph client with the scopes the call needs, and runs the
Graph request through the resilient executor. Handlers never raise; every
failure becomes an `is_error` result.
"""

from __future__ import annotations

import html
import logging
from collections.abc import Sequence
from typing import Any

from onenote_mcp.auth.lifecycle import CredentialLifecycleManager
from onenote_mcp.config import READ_SCOPES, WRITE_SCOPES
from onenote_mcp.graph.client import GraphApiError, GraphClient
from onenote_mcp.resilience.executor import Executor
from onenote_mcp.tools.manager import ToolManager
from onenote_mcp.tools.models import CallToolResult, JSONSchema, Tool
from onenote_mcp.tools.responses import error_result, success_result
from onenote_mcp.tools.search import ENTITY_TYPES, match_score, rank
from onenote_mcp.tools.validation import (
    InvalidArgumentError,
    sanitize_html_content,
    sanitize_string,
    validate_id,
    validate_limit,
    validate_optional_id,
    validate_search_term,
    validate_title,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_TITLE = "New Page"
DEFAULT_PAGE_BODY = "<p>This is a new page created via the OneNote MCP.</p>"

_ID = {"type": "string"}
_LIMIT = {"type": "integer", "description": "Maximum number of results to return."}


def _schema(properties: dict[str, Any] | None = None, required: list[str] | None = None):
    return JSONSchema(properties=properties or {}, required=required)


def _described(base: dict[str, Any], description: str) -> dict[str, Any]:
    return {**base, "description": description}


class OneNoteTools:
    """Tool handlers for notebooks, sections, pages, search and sign-in state."""

    def __init__(self, lifecycle: CredentialLifecycleManager, executor: Executor):
        self._lifecycle = lifecycle
        self._executor = executor

    def register(self, manager: ToolManager) -> None:
        """Register every OneNote tool on `manager`."""
        for tool, handler in self._definitions():
            manager.register(tool, handler)

    # ================================
    # Notebooks
    # ================================

    async def list_notebooks(self, arguments: dict[str, Any]) -> CallToolResult:
        try:
            client = await self._lifecycle.ensure(READ_SCOPES)
            response = await self._get(client, "/me/onenote/notebooks")
            return success_result(response.get("value", []))
        except Exception as e:
            return error_result("List notebooks", e, {"resourceType": "notebook"})

    async def get_notebook(self, arguments: dict[str, Any]) -> CallToolResult:
        """Get one notebook by id, or the first notebook when no id is given."""
        notebook_id = arguments.get("notebookId")
        try:
            notebook_id = validate_optional_id(notebook_id, "notebookId")
            client = await self._lifecycle.ensure(READ_SCOPES)
            if notebook_id:
                return success_result(
                    await self._get(client, f"/me/onenote/notebooks/{notebook_id}")
                )

            notebooks = (await self._get(client, "/me/onenote/notebooks")).get("value") or []
            if not notebooks:
                return success_result({"error": "No notebooks found"})
            return success_result(notebooks[0])
        except Exception as e:
            return error_result(
                "Get notebook", e, {"notebookId": notebook_id, "resourceType": "notebook"}
            )

    async def create_notebook(self, arguments: dict[str, Any]) -> CallToolResult:
        try:
            display_name = validate_title(arguments.get("displayName"), "displayName")
            client = await self._lifecycle.ensure(WRITE_SCOPES)
            response = await self._executor.execute(
                lambda: client.post_json(
                    "/me/onenote/notebooks", {"displayName": display_name}
                )
            )
            logger.info(f"Created notebook {response.get('displayName')}")
            return success_result(
                {
                    "success": True,
                    "id": response.get("id"),
                    "displayName": response.get("displayName"),
                    "self": response.get("self"),
                    "links": response.get("links"),
                }
            )
        except Exception as e:
            return error_result("Create notebook", e, {"resourceType": "notebook"})

    # ================================
    # Sections
    # ================================

    async def list_sections(self, arguments: dict[str, Any]) -> CallToolResult:
        notebook_id = arguments.get("notebookId")
        try:
            notebook_id = validate_optional_id(notebook_id, "notebookId")
            path = (
                f"/me/onenote/notebooks/{notebook_id}/sections"
                if notebook_id
                else "/me/onenote/sections"
            )
            client = await self._lifecycle.ensure(READ_SCOPES)
            sections = (await self._get(client, path)).get("value", [])
            logger.info(f"Retrieved {len(sections)} sections")
            return success_result(sections)
        except Exception as e:
            return error_result(
                "List sections", e, {"notebookId": notebook_id, "resourceType": "section"}
            )

    async def get_section(self, arguments: dict[str, Any]) -> CallToolResult:
        section_id = arguments.get("sectionId")
        try:
            section_id = validate_id(section_id, "sectionId")
            client = await self._lifecycle.ensure(READ_SCOPES)
            return success_result(
                await self._get(client, f"/me/onenote/sections/{section_id}")
            )
        except Exception as e:
            return error_result(
                "Get section", e, {"sectionId": section_id, "resourceType": "section"}
            )

    async def create_section(self, arguments: dict[str, Any]) -> CallToolResult:
        notebook_id = arguments.get("notebookId")
        try:
            notebook_id = validate_id(notebook_id, "notebookId")
            display_name = validate_title(arguments.get("displayName"), "displayName")
            client = await self._lifecycle.ensure(WRITE_SCOPES)
            response = await self._executor.execute(
                lambda: client.post_json(
                    f"/me/onenote/notebooks/{notebook_id}/sections",
                    {"displayName": display_name},
                )
            )
            logger.info(f"Created section {response.get('displayName')} ({response.get('id')})")
            return success_result(
                {
                    "success": True,
                    "id": response.get("id"),
                    "displayName": response.get("displayName"),
                    "self": response.get("self"),
                }
            )
        except Exception as e:
            return error_result(
                "Create section", e, {"notebookId": notebook_id, "resourceType": "section"}
            )

    async def list_section_groups(self, arguments: dict[str, Any]) -> CallToolResult:
        notebook_id = arguments.get("notebookId")
        try:
            notebook_id = validate_optional_id(notebook_id, "notebookId")
            path = (
                f"/me/onenote/notebooks/{notebook_id}/sectionGroups"
                if notebook_id
                else "/me/onenote/sectionGroups"
            )
            client = await self._lifecycle.ensure(READ_SCOPES)
            return success_result((await self._get(client, path)).get("value", []))
        except Exception as e:
            return error_result(
                "List section groups",
                e,
                {"notebookId": notebook_id, "resourceType": "sectionGroup"},
            )

    async def list_sections_in_group(self, arguments: dict[str, Any]) -> CallToolResult:
        group_id = arguments.get("sectionGroupId")
        try:
            group_id = validate_id(group_id, "sectionGroupId")
            client = await self._lifecycle.ensure(READ_SCOPES)
            response = await self._get(
                client, f"/me/onenote/sectionGroups/{group_id}/sections"
            )
            return success_result(response.get("value", []))
        except Exception as e:
            return error_result(
                "List sections in group",
                e,
                {"sectionGroupId": group_id, "resourceType": "section"},
            )

    # ================================
    # Pages
    # ================================

    async def list_pages(self, arguments: dict[str, Any]) -> CallToolResult:
        """List pages in one section, or in every section when none is given."""
        section_id = arguments.get("sectionId")
        try:
            section_id = validate_optional_id(section_id, "sectionId")
            client = await self._lifecycle.ensure(READ_SCOPES)
            if section_id:
                response = await self._get(client, f"/me/onenote/sections/{section_id}/pages")
                return success_result(response.get("value", []))

            sections = (await self._get(client, "/me/onenote/sections")).get("value") or []
            return success_result(await self._pages_in_sections(client, sections))
        except Exception as e:
            return error_result(
                "List pages", e, {"sectionId": section_id, "resourceType": "page"}
            )

    async def get_page(self, arguments: dict[str, Any]) -> CallToolResult:
        """Fetch a page's metadata and HTML content.

        Looks the page up by `pageId` when given; otherwise takes the first
        page whose title contains `title`, case-insensitively.
        """
        page_id = arguments.get("pageId")
        title = arguments.get("title")
        try:
            page_id = validate_optional_id(page_id, "pageId")
            title = validate_search_term(title, "title")
            if not page_id and not title:
                raise InvalidArgumentError(
                    "pageId", "Provide either pageId or title to select a page"
                )

            client = await self._lifecycle.ensure(READ_SCOPES)
            if page_id:
                page = await self._get(client, f"/me/onenote/pages/{page_id}")
            else:
                pages = (await self._get(client, "/me/onenote/pages")).get("value") or []
                needle = title.lower()
                page = next(
                    (p for p in pages if needle in (p.get("title") or "").lower()), None
                )
                if page is None:
                    return success_result(
                        {
                            "error": f"No page found matching title: {title}",
                            "suggestion": "Try a different search term or use listPages "
                            "to see all available pages.",
                            "searchedTitle": title,
                        }
                    )

            content = await self._executor.execute(
                lambda: client.get_text(f"/me/onenote/pages/{page['id']}/content")
            )
            return success_result(
                {
                    "id": page.get("id"),
                    "title": page.get("title"),
                    "createdDateTime": page.get("createdDateTime"),
                    "lastModifiedDateTime": page.get("lastModifiedDateTime"),
                    "contentUrl": page.get("contentUrl"),
                    "content": content,
                }
            )
        except Exception as e:
            return error_result(
                "Get page", e, {"pageId": page_id, "query": title, "resourceType": "page"}
            )

    async def create_page(self, arguments: dict[str, Any]) -> CallToolResult:
        section_id = arguments.get("sectionId")
        try:
            section_id = validate_id(section_id, "sectionId")
            title = (
                validate_title(arguments["title"])
                if arguments.get("title")
                else DEFAULT_PAGE_TITLE
            )
            body = sanitize_html_content(arguments.get("content")) or DEFAULT_PAGE_BODY
            document = (
                "<!DOCTYPE html>\n"
                "<html>\n"
                f"  <head><title>{html.escape(title)}</title></head>\n"
                f"  <body>{body}</body>\n"
                "</html>\n"
            )

            client = await self._lifecycle.ensure(WRITE_SCOPES)
            response = await self._executor.execute(
                lambda: client.post_html(f"/me/onenote/sections/{section_id}/pages", document)
            )
            logger.info(f"Created page {response.get('title')} ({response.get('id')})")
            return success_result(
                {
                    "success": True,
                    "id": response.get("id"),
                    "title": response.get("title"),
                    "createdDateTime": response.get("createdDateTime"),
                    "self": response.get("self"),
                }
            )
        except Exception as e:
            return error_result(
                "Create page", e, {"sectionId": section_id, "resourceType": "page"}
            )

    async def update_page(self, arguments: dict[str, Any]) -> CallToolResult:
        """Append HTML to a page's body, or to the element named by `target`."""
        page_id = arguments.get("pageId")
        try:
            page_id = validate_id(page_id, "pageId")
            content = sanitize_html_content(arguments.get("content"))
            if not content:
                raise InvalidArgumentError("content", "content is required")
            target = sanitize_string(arguments.get("target")).strip() or "body"

            patch = [{"target": target, "action": "append", "content": content}]
            client = await self._lifecycle.ensure(WRITE_SCOPES)
            await self._executor.execute(
                lambda: client.patch_json(f"/me/onenote/pages/{page_id}/content", patch)
            )
            return success_result(
                {"success": True, "message": "Page updated successfully", "pageId": page_id}
            )
        except Exception as e:
            return error_result(
                "Update page", e, {"pageId": page_id, "resourceType": "page"}
            )

    async def delete_page(self, arguments: dict[str, Any]) -> CallToolResult:
        page_id = arguments.get("pageId")
        try:
            page_id = validate_id(page_id, "pageId")
            client = await self._lifecycle.ensure(WRITE_SCOPES)
            await self._executor.execute(
                lambda: client.delete(f"/me/onenote/pages/{page_id}")
            )
            logger.info(f"Deleted page {page_id}")
            return success_result(
                {
                    "success": True,
                    "message": "Page deleted successfully",
                    "deletedPageId": page_id,
                }
            )
        except Exception as e:
            return error_result(
                "Delete page", e, {"pageId": page_id, "resourceType": "page"}
            )

    async def search_pages(self, arguments: dict[str, Any]) -> CallToolResult:
        """Find pages whose title contains the query."""
        query = arguments.get("query")
        try:
            query = _required_query(query)
            notebook_id = validate_optional_id(arguments.get("notebookId"), "notebookId")
            section_id = validate_optional_id(arguments.get("sectionId"), "sectionId")

            client = await self._lifecycle.ensure(READ_SCOPES)
            if section_id:
                response = await self._get(client, f"/me/onenote/sections/{section_id}/pages")
                pages = response.get("value") or []
            elif notebook_id:
                sections = (
                    await self._get(client, f"/me/onenote/notebooks/{notebook_id}/sections")
                ).get("value") or []
                pages = await self._pages_in_sections(client, sections)
            else:
                pages = (await self._get(client, "/me/onenote/pages")).get("value") or []

            needle = query.lower()
            results = [p for p in pages if needle in (p.get("title") or "").lower()]
            logger.info(
                f"Found {len(results)} pages matching {query!r} (searched {len(pages)})"
            )
            return success_result(
                {
                    "query": query,
                    "matches": len(results),
                    "totalSearched": len(pages),
                    "results": results,
                }
            )
        except Exception as e:
            return error_result("Search pages", e, {"query": query, "resourceType": "page"})

    # ================================
    # Search
    # ================================

    async def search(self, arguments: dict[str, Any]) -> CallToolResult:
        """Rank notebooks, sections, section groups and pages by name match."""
        query = arguments.get("query")
        try:
            query = _required_query(query)
            entity_types = _entity_types(arguments.get("entityTypes"))
            notebook_id = validate_optional_id(arguments.get("notebookId"), "notebookId")
            limit = validate_limit(arguments.get("limit"))

            client = await self._lifecycle.ensure(READ_SCOPES)
            results: list[dict[str, Any]] = []
            for entity_type in entity_types:
                try:
                    results.extend(
                        await self._search_entities(client, entity_type, query, notebook_id)
                    )
                except GraphApiError as e:
                    logger.warning(f"Failed to search {entity_type}: {e}")

            ranked, total = rank(results, query, limit=limit)
            grouped = {
                entity_type: [r for r in ranked if r["entityType"] == entity_type]
                for entity_type in ENTITY_TYPES
            }
            return success_result(
                {
                    "query": query,
                    "searchedTypes": list(entity_types),
                    "notebookId": notebook_id or "all",
                    "totalMatches": total,
                    "results": ranked,
                    "groupedResults": grouped,
                }
            )
        except Exception as e:
            return error_result("Search", e, {"query": query, "resourceType": "mixed"})

    # ================================
    # Sign-in state
    # ================================

    async def auth_status(self, arguments: dict[str, Any]) -> CallToolResult:
        try:
            return success_result(await self._lifecycle.status())
        except Exception as e:
            return error_result("Auth status", e)

    async def sign_out(self, arguments: dict[str, Any]) -> CallToolResult:
        try:
            await self._lifecycle.sign_out()
            return success_result({"success": True, "message": "Signed out"})
        except Exception as e:
            return error_result("Sign out", e)

    # ================================
    # Helpers
    # ================================

    async def _get(self, client: GraphClient, path: str) -> dict[str, Any]:
        return await self._executor.execute(lambda: client.get(path))

    async def _pages_in_sections(
        self, client: GraphClient, sections: Sequence[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Collect pages section by section, tagging each with its section.

        A section that fails to list is logged and skipped.
        """
        pages: list[dict[str, Any]] = []
        failed = 0
        for section in sections:
            try:
                response = await self._get(
                    client, f"/me/onenote/sections/{section['id']}/pages"
                )
            except GraphApiError as e:
                failed += 1
                logger.warning(
                    f"Failed to fetch pages from section {section.get('displayName')}: {e}"
                )
                continue
            for page in response.get("value") or []:
                pages.append(
                    {
                        **page,
                        "sectionName": section.get("displayName"),
                        "sectionId": section.get("id"),
                    }
                )
        logger.info(
            f"Retrieved {len(pages)} pages from {len(sections) - failed} sections "
            f"({failed} sections had errors)"
        )
        return pages

    async def _search_entities(
        self,
        client: GraphClient,
        entity_type: str,
        query: str,
        notebook_id: str | None,
    ) -> list[dict[str, Any]]:
        if entity_type == "notebooks":
            items = (await self._get(client, "/me/onenote/notebooks")).get("value") or []
            return [_search_hit("notebooks", item, item.get("displayName")) for item in items]

        if entity_type in ("sections", "sectionGroups"):
            path = (
                f"/me/onenote/notebooks/{notebook_id}/{entity_type}"
                if notebook_id
                else f"/me/onenote/{entity_type}"
            )
            items = (await self._get(client, path)).get("value") or []
            hits = []
            for item in items:
                hit = _search_hit(entity_type, item, item.get("displayName"))
                parent = item.get("parentNotebook")
                if parent:
                    hit["parentInfo"] = {
                        "notebookId": parent.get("id"),
                        "notebookName": parent.get("displayName"),
                    }
                hits.append(hit)
            return hits

        if notebook_id:
            sections = (
                await self._get(client, f"/me/onenote/notebooks/{notebook_id}/sections")
            ).get("value") or []
            pages = await self._pages_in_sections(client, sections)
        else:
            pages = (await self._get(client, "/me/onenote/pages")).get("value") or []

        hits = []
        for page in pages:
            # Skip the per-item dict for pages that cannot match.
            if not match_score(page.get("title"), query):
                continue
            parent = page.get("parentSection") or {}
            hit = _search_hit("pages", page, page.get("title"))
            hit["parentInfo"] = {
                "sectionId": page.get("sectionId") or parent.get("id"),
                "sectionName": page.get("sectionName") or parent.get("displayName"),
            }
            hits.append(hit)
        return hits

    def _definitions(self) -> list[tuple[Tool, Any]]:
        notebook_filter = _described(_ID, "Limit results to this notebook.")
        return [
            (
                Tool(
                    name="listNotebooks",
                    description="List all OneNote notebooks.",
                    input_schema=_schema(),
                ),
                self.list_notebooks,
            ),
            (
                Tool(
                    name="getNotebook",
                    description="Get a notebook by ID, or the first notebook when no ID is given.",
                    input_schema=_schema({"notebookId": _described(_ID, "Notebook ID.")}),
                ),
                self.get_notebook,
            ),
            (
                Tool(
                    name="createNotebook",
                    description="Create a new notebook.",
                    input_schema=_schema(
                        {"displayName": {"type": "string", "description": "Notebook name."}},
                        ["displayName"],
                    ),
                ),
                self.create_notebook,
            ),
            (
                Tool(
                    name="listSections",
                    description="List sections, optionally within one notebook.",
                    input_schema=_schema({"notebookId": notebook_filter}),
                ),
                self.list_sections,
            ),
            (
                Tool(
                    name="getSection",
                    description="Get a section by ID.",
                    input_schema=_schema(
                        {"sectionId": _described(_ID, "Section ID.")}, ["sectionId"]
                    ),
                ),
                self.get_section,
            ),
            (
                Tool(
                    name="createSection",
                    description="Create a new section in a notebook.",
                    input_schema=_schema(
                        {
                            "notebookId": _described(_ID, "Notebook to create the section in."),
                            "displayName": {"type": "string", "description": "Section name."},
                        },
                        ["notebookId", "displayName"],
                    ),
                ),
                self.create_section,
            ),
            (
                Tool(
                    name="listSectionGroups",
                    description="List section groups, optionally within one notebook.",
                    input_schema=_schema({"notebookId": notebook_filter}),
                ),
                self.list_section_groups,
            ),
            (
                Tool(
                    name="listSectionsInGroup",
                    description="List the sections inside a section group.",
                    input_schema=_schema(
                        {"sectionGroupId": _described(_ID, "Section group ID.")},
                        ["sectionGroupId"],
                    ),
                ),
                self.list_sections_in_group,
            ),
            (
                Tool(
                    name="listPages",
                    description="List pages in a section, or across all sections.",
                    input_schema=_schema(
                        {"sectionId": _described(_ID, "Limit results to this section.")}
                    ),
                ),
                self.list_pages,
            ),
            (
                Tool(
                    name="getPage",
                    description=(
                        "Get a page with its HTML content, by ID or by a title "
                        "search. pageId takes precedence over title."
                    ),
                    input_schema=_schema(
                        {
                            "pageId": _described(_ID, "Page ID."),
                            "title": {
                                "type": "string",
                                "description": "Text to find in the page title.",
                            },
                        }
                    ),
                ),
                self.get_page,
            ),
            (
                Tool(
                    name="createPage",
                    description="Create a page in a section from HTML content.",
                    input_schema=_schema(
                        {
                            "sectionId": _described(_ID, "Section to create the page in."),
                            "title": {"type": "string", "description": "Page title."},
                            "content": {"type": "string", "description": "HTML body."},
                        },
                        ["sectionId"],
                    ),
                ),
                self.create_page,
            ),
            (
                Tool(
                    name="updatePage",
                    description="Append HTML content to a page.",
                    input_schema=_schema(
                        {
                            "pageId": _described(_ID, "Page ID."),
                            "content": {"type": "string", "description": "HTML to append."},
                            "target": {
                                "type": "string",
                                "description": "Element to append to. Defaults to body.",
                            },
                        },
                        ["pageId", "content"],
                    ),
                ),
                self.update_page,
            ),
            (
                Tool(
                    name="deletePage",
                    description="Delete a page.",
                    input_schema=_schema({"pageId": _described(_ID, "Page ID.")}, ["pageId"]),
                ),
                self.delete_page,
            ),
            (
                Tool(
                    name="searchPages",
                    description="Find pages whose title contains the query.",
                    input_schema=_schema(
                        {
                            "query": {"type": "string", "description": "Text to find."},
                            "notebookId": notebook_filter,
                            "sectionId": _described(_ID, "Limit results to this section."),
                        },
                        ["query"],
                    ),
                ),
                self.search_pages,
            ),
            (
                Tool(
                    name="search",
                    description=(
                        "Search notebooks, sections, section groups and pages by "
                        "name. Results are ranked by relevance."
                    ),
                    input_schema=_schema(
                        {
                            "query": {"type": "string", "description": "Text to find."},
                            "entityTypes": {
                                "type": "array",
                                "items": {"type": "string", "enum": list(ENTITY_TYPES)},
                                "description": "Entity types to search. Defaults to all.",
                            },
                            "notebookId": notebook_filter,
                            "limit": _LIMIT,
                        },
                        ["query"],
                    ),
                ),
                self.search,
            ),
            (
                Tool(
                    name="authStatus",
                    description="Show whether a Microsoft account is signed in.",
                    input_schema=_schema(),
                ),
                self.auth_status,
            ),
            (
                Tool(
                    name="signOut",
                    description="Forget the stored Microsoft credentials.",
                    input_schema=_schema(),
                ),
                self.sign_out,
            ),
        ]


def _required_query(value: object) -> str:
    query = validate_search_term(value, "query")
    if not query:
        raise InvalidArgumentError("query", "query is required")
    return query


def _entity_types(value: object) -> tuple[str, ...]:
    if value is None:
        return ENTITY_TYPES
    if not isinstance(value, list) or not value:
        raise InvalidArgumentError("entityTypes", "entityTypes must be a non-empty list")
    unknown = [v for v in value if v not in ENTITY_TYPES]
    if unknown:
        raise InvalidArgumentError(
            "entityTypes",
            f"Unknown entity types {unknown}; expected any of {list(ENTITY_TYPES)}",
        )
    return tuple(dict.fromkeys(value))


def _search_hit(entity_type: str, item: dict[str, Any], name: str | None) -> dict[str, Any]:
    return {
        "entityType": entity_type,
        "id": item.get("id"),
        "displayName": name,
        "createdDateTime": item.get("createdDateTime"),
        "lastModifiedDateTime": item.get("lastModifiedDateTime"),
    }
