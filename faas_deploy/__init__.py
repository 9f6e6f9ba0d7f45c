"""
faas_deploy
-----------

veFaaS(火山引擎 함수 서비스)용 컨테이너 배포 CLI 패키지.
도커 이미지 빌드 → 레지스트리 푸시 → 함수 이미지 교체 → 이미지 동기화 대기 →
릴리스 → 릴리스 완료 대기까지를 서비스별로 한 번에 수행하는 것을 목표로 한다.
"""

__all__ = [
    "config",
    "faas_client",
    "orchestrator",
    "signer",
]
