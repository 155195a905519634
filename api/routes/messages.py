from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.deps import get_chat_service, get_user_id
from api.schemas.chat import (
    DeleteMessageResponse,
    EditMessageRequest,
    EditMessageResponse,
    MessageBranchesResponse,
    PrimaryResponseRequest,
    RetryRequest,
    RetryResponse,
    SwitchVersionRequest,
)
from branchchat.model import Message
from branchchat.service import ChatService, DeleteMode

router = APIRouter(prefix="/api/messages", tags=["messages"])


@router.get("/{message_id}", response_model=Message)
async def get_message(
    message_id: str,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """轮询流式消息的当前内容"""
    return await service.get_message(user_id, message_id)


@router.post("/{message_id}/stop", status_code=204)
async def stop_streaming(
    message_id: str,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    await service.stop_streaming(user_id, message_id)


@router.post("/{message_id}/retry", response_model=RetryResponse, status_code=202)
async def retry(
    message_id: str,
    body: Optional[RetryRequest] = None,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """重新生成 assistant 回复（新版本）"""
    version_id = await service.retry(user_id, message_id, model=body.model if body else None)
    return RetryResponse(version_id=version_id)


@router.post("/{message_id}/edit", response_model=EditMessageResponse)
async def edit_message(
    message_id: str,
    body: EditMessageRequest,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """编辑消息 -> 新分支"""
    result = await service.edit_message(user_id, message_id, body.content, regenerate=body.regenerate)
    return EditMessageResponse(**result.model_dump())


@router.get("/{message_id}/branches", response_model=MessageBranchesResponse)
async def message_branches(
    message_id: str,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    return MessageBranchesResponse(view=await service.message_branches(user_id, message_id))


@router.post("/{message_id}/versions/switch", response_model=Message)
async def switch_version(
    message_id: str,
    body: SwitchVersionRequest,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    return await service.switch_version(user_id, message_id, body.version_id)


@router.post("/{message_id}/responses/primary", response_model=Message)
async def set_primary_response(
    message_id: str,
    body: PrimaryResponseRequest,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    return await service.set_primary_response(user_id, message_id, body.response_id)


@router.delete("/{message_id}/responses/{response_id}", response_model=Message)
async def delete_response(
    message_id: str,
    response_id: str,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    return await service.delete_response(user_id, message_id, response_id)


@router.delete("/{message_id}", response_model=DeleteMessageResponse)
async def delete_message(
    message_id: str,
    mode: DeleteMode = Query(DeleteMode.SINGLE),
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    result = await service.delete_message(user_id, message_id, mode)
    return DeleteMessageResponse(deleted_count=result.deleted_count, from_index=result.from_index, mode=mode)
