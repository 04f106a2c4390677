from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from ...domain.errors import GenerationError, NotFoundError, PersistenceError
from ...domain.models import Node
from ...services.content_tree import ContentTree
from ...services.engine import get_content_tree

router = APIRouter(prefix="/tree", tags=["tree"])


class NodeWithChildren(BaseModel):
    node: Node
    children: List[Node]


@router.get("/nodes/{node_id}", response_model=NodeWithChildren)
def get_node(node_id: int, tree: ContentTree = Depends(get_content_tree)) -> NodeWithChildren:
    """Return a node and its children, generating them on first access."""
    try:
        node = tree.get_node(node_id)
        children = tree.get_children(node_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except GenerationError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.user_message) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.user_message) from exc
    return NodeWithChildren(node=node, children=children)
