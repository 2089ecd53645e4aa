"""마스터에서 명령을 받아 실행하는 노드 러너."""
