#!/usr/bin/env python3
"""
PTGuard - PT 站点分享率监控与自动抓取熔断
统计面板 / 熔断状态 API
"""

import sys
import logging
import secrets
from datetime import datetime, timedelta, timezone
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
import uvicorn
import jwt

from . import VERSION
from .config import find_config_path
from .errors import ConfigError, PersistenceFailure
from .monitor import Environment, StatsMonitor

logger = logging.getLogger("ptguard")

JWT_ALGORITHM = "HS256"


class LoginRequest(BaseModel):
    username: str
    password: str


def create_token(username: str, secret: str) -> str:
    payload = {
        'sub': username,
        'exp': datetime.now(timezone.utc) + timedelta(days=7)
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


# ════════════════════════════════════════════════════════════════════════════════
# FastAPI 应用
# ════════════════════════════════════════════════════════════════════════════════

def create_app(env: Environment, monitor: Optional[StatsMonitor] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"🚀 PTGuard v{VERSION} 启动中...")
        if monitor:
            monitor.start()

        yield

        logger.info("🛑 PTGuard 正在关闭...")
        if monitor:
            monitor.stop()
        env.close()

    app = FastAPI(title="PTGuard", version=VERSION, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    security = HTTPBearer(auto_error=False)

    def verify_token(credentials: HTTPAuthorizationCredentials = Depends(security)) -> str:
        if not credentials:
            raise HTTPException(401, "未认证")
        try:
            payload = jwt.decode(credentials.credentials, env.cfg.jwt_secret, algorithms=[JWT_ALGORITHM])
            return payload.get('sub')
        except jwt.PyJWTError:
            raise HTTPException(401, "认证失败")

    # ═══════════════════════════════════════════════════════════════════
    # API 路由
    # ═══════════════════════════════════════════════════════════════════

    @app.post("/api/auth/login")
    async def login(req: LoginRequest):
        cfg = env.cfg
        if not (secrets.compare_digest(req.username, cfg.web_username)
                and secrets.compare_digest(req.password, cfg.web_password)):
            raise HTTPException(401, "用户名或密码错误")
        return {
            'token': create_token(req.username, cfg.jwt_secret),
            'username': req.username
        }

    @app.get("/api/stats")
    async def get_stats(username: str = Depends(verify_token)):
        return env.dashboard.snapshot()

    @app.get("/api/stats/{tracker}")
    async def get_tracker_stats(tracker: str, username: str = Depends(verify_token)):
        content = env.dashboard.tracker(tracker)
        if content is None:
            raise HTTPException(404, f"站点 {tracker} 没有统计数据")
        return content

    @app.get("/api/breakers")
    async def get_breakers(username: str = Depends(verify_token)):
        return env.breaker.states()

    @app.post("/api/reload")
    async def reload_config(username: str = Depends(verify_token)):
        ok, msg = env.reload()
        if not ok:
            raise HTTPException(400, msg)
        return {'success': True, 'message': msg}

    @app.get("/api/logs")
    async def get_logs(n: int = 50, username: str = Depends(verify_token)):
        return {'logs': env.log_buffer.get_recent(max(1, min(n, 200)))}

    @app.get("/api/health")
    async def health():
        return {
            'status': 'ok',
            'version': VERSION,
            'monitor': bool(monitor and monitor.running),
            'trackers': len(env.cfg.stats_trackers()),
        }

    return app


def main():
    path = find_config_path(sys.argv)
    if not path:
        print("❌ 找不到配置文件，用法: ptguard [config.json]")
        sys.exit(1)
    try:
        env = Environment.setup(path)
    except (ConfigError, PersistenceFailure) as e:
        logging.getLogger("ptguard").error(f"❌ {e}")
        print(f"❌ {e}")
        sys.exit(1)

    app = create_app(env, StatsMonitor(env))
    uvicorn.run(app, host=env.cfg.web_host, port=env.cfg.web_port, log_level="warning")


if __name__ == "__main__":
    main()
