"""Rackjobs 마스터: 노드 대상 펌웨어 업데이트와 명령 실행 작업."""
