from fastapi import APIRouter, Depends

from api.deps import get_chat_service, get_user_id
from api.schemas.chat import (
    BranchListResponse,
    ChatListResponse,
    CreateChatRequest,
    MultiModelMessageRequest,
    RecoverResponse,
    RenameChatRequest,
    SendMessageRequest,
    SendMessageResponse,
    SwitchBranchRequest,
    TranscriptResponse,
)
from branchchat.model import AISettings, Chat
from branchchat.service import ChatService

router = APIRouter(prefix="/api/chats", tags=["chats"])


@router.post("", response_model=Chat, status_code=201)
async def create_chat(
    body: CreateChatRequest,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """创建新对话"""
    return await service.create_chat(user_id, model=body.model, title=body.title)


@router.get("", response_model=ChatListResponse)
async def list_chats(
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    return ChatListResponse(chats=await service.list_chats(user_id))


@router.post("/recover", response_model=RecoverResponse)
async def recover_incomplete(
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """恢复中断的生成（客户端重连时调用）"""
    return RecoverResponse(restarted=await service.recover_incomplete(user_id))


@router.get("/{chat_id}", response_model=TranscriptResponse)
async def get_chat(
    chat_id: str,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """对话 + 当前分支的完整消息列表"""
    chat = await service.get_chat(user_id, chat_id)
    messages = await service.get_transcript(user_id, chat_id)
    return TranscriptResponse(chat=chat, messages=messages)


@router.patch("/{chat_id}", response_model=Chat)
async def rename_chat(
    chat_id: str,
    body: RenameChatRequest,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    return await service.rename_chat(user_id, chat_id, body.title)


@router.put("/{chat_id}/settings", response_model=Chat)
async def update_ai_settings(
    chat_id: str,
    body: AISettings,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    return await service.update_ai_settings(user_id, chat_id, body)


@router.delete("/{chat_id}", status_code=204)
async def delete_chat(
    chat_id: str,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    await service.delete_chat(user_id, chat_id)


@router.post("/{chat_id}/messages", response_model=SendMessageResponse, status_code=202)
async def send_message(
    chat_id: str,
    body: SendMessageRequest,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    """发送消息；回复在后台流式写入 assistant 消息"""
    result = await service.send_message(
        user_id,
        chat_id,
        body.content,
        model=body.model,
        attachments=body.attachments,
        commands=body.commands,
    )
    return SendMessageResponse(**result.model_dump())


@router.post("/{chat_id}/messages/multi", response_model=SendMessageResponse, status_code=202)
async def send_multi_model_message(
    chat_id: str,
    body: MultiModelMessageRequest,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    result = await service.send_multi_model_message(
        user_id, chat_id, body.content, body.models, attachments=body.attachments, commands=body.commands
    )
    return SendMessageResponse(**result.model_dump())


@router.get("/{chat_id}/branches", response_model=BranchListResponse)
async def list_branches(
    chat_id: str,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    chat = await service.get_chat(user_id, chat_id)
    branches = await service.list_branches(user_id, chat_id)
    return BranchListResponse(active_branch_id=chat.active_branch_id, branches=branches)


@router.post("/{chat_id}/branches/switch", response_model=Chat)
async def switch_branch(
    chat_id: str,
    body: SwitchBranchRequest,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    return await service.switch_branch(user_id, chat_id, body.branch_id)
