"""Print the Supabase schema for MedsPG (run it in the Supabase SQL Editor)."""
import os

from dotenv import load_dotenv

from engine import POINTS_PER_POST, POINTS_PER_REPLY, POINTS_PER_UPVOTE

load_dotenv()

SUPABASE_URL = os.getenv("SUPABASE_URL")

# SQL schema
SCHEMA_SQL = f"""
-- Question Bank (read-only to the app)
CREATE TABLE IF NOT EXISTS "Questions" (
    id BIGINT PRIMARY KEY,
    question_text TEXT NOT NULL,
    options JSONB NOT NULL,
    correct_answer TEXT NOT NULL,
    subject TEXT NOT NULL,
    explanation TEXT,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

-- One row per submitted test
CREATE TABLE IF NOT EXISTS "TestResults" (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
    subject TEXT NOT NULL,
    score_percent INT NOT NULL CHECK (score_percent BETWEEN 0 AND 100),
    correct_count INT NOT NULL,
    wrong_count INT NOT NULL,
    skipped_count INT NOT NULL,
    total_questions INT NOT NULL,
    time_per_question JSONB NOT NULL DEFAULT '[]',
    created_at TIMESTAMPTZ DEFAULT NOW()
);

-- Community
CREATE TABLE IF NOT EXISTS posts (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    title VARCHAR(200) NOT NULL,
    content TEXT NOT NULL,
    subject TEXT NOT NULL,
    author_id UUID REFERENCES auth.users(id) ON DELETE SET NULL,
    author_name TEXT,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS replies (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    post_id BIGINT NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    author_id UUID REFERENCES auth.users(id) ON DELETE SET NULL,
    author_name TEXT,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS votes (
    id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY,
    post_id BIGINT NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
    user_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
    vote_type VARCHAR(4) NOT NULL CHECK (vote_type IN ('up', 'down')),
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE(post_id, user_id)
);

-- Points
CREATE TABLE IF NOT EXISTS user_points (
    user_id UUID PRIMARY KEY REFERENCES auth.users(id) ON DELETE CASCADE,
    points INT NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

-- Each grant key (post:<id>, reply:<id>, vote:<id>) is applied at most once
CREATE TABLE IF NOT EXISTS point_grants (
    grant_key TEXT PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
    points INT NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

-- The only way points change. Recipient and amount come from the referenced row;
-- only that row's author (or the voter) may claim it, and each key pays out once.
CREATE OR REPLACE FUNCTION grant_points(p_grant_key TEXT)
RETURNS INT
LANGUAGE plpgsql
SECURITY DEFINER
SET search_path = public
AS $$
DECLARE
    v_kind TEXT;
    v_id BIGINT;
    v_actor UUID;
    v_recipient UUID;
    v_points INT;
    v_inserted INT;
BEGIN
    IF p_grant_key !~ '^(post|reply|vote):[0-9]+$' THEN
        RAISE EXCEPTION 'Invalid grant key: %', p_grant_key;
    END IF;
    v_kind := split_part(p_grant_key, ':', 1);
    v_id := split_part(p_grant_key, ':', 2)::BIGINT;

    IF v_kind = 'post' THEN
        SELECT author_id, author_id, {POINTS_PER_POST} INTO v_actor, v_recipient, v_points
        FROM posts WHERE id = v_id;
    ELSIF v_kind = 'reply' THEN
        SELECT author_id, author_id, {POINTS_PER_REPLY} INTO v_actor, v_recipient, v_points
        FROM replies WHERE id = v_id;
    ELSE
        SELECT v.user_id, p.author_id, {POINTS_PER_UPVOTE} INTO v_actor, v_recipient, v_points
        FROM votes v JOIN posts p ON p.id = v.post_id
        WHERE v.id = v_id AND v.vote_type = 'up';
    END IF;

    IF v_recipient IS NULL OR v_actor IS DISTINCT FROM auth.uid() THEN
        RETURN 0;
    END IF;

    INSERT INTO point_grants (grant_key, user_id, points)
    VALUES (p_grant_key, v_recipient, v_points)
    ON CONFLICT (grant_key) DO NOTHING;
    GET DIAGNOSTICS v_inserted = ROW_COUNT;
    IF v_inserted = 0 THEN
        RETURN 0;
    END IF;

    INSERT INTO user_points (user_id, points)
    VALUES (v_recipient, v_points)
    ON CONFLICT (user_id)
    DO UPDATE SET points = user_points.points + EXCLUDED.points, updated_at = NOW();
    RETURN v_points;
END;
$$;

REVOKE ALL ON FUNCTION grant_points(TEXT) FROM PUBLIC, anon;
GRANT EXECUTE ON FUNCTION grant_points(TEXT) TO authenticated;
REVOKE INSERT, UPDATE, DELETE ON point_grants FROM anon, authenticated;
REVOKE INSERT, UPDATE ON user_points FROM anon, authenticated;

-- Profiles
CREATE TABLE IF NOT EXISTS profiles (
    id UUID PRIMARY KEY REFERENCES auth.users(id) ON DELETE CASCADE,
    display_name TEXT,
    college TEXT,
    year TEXT,
    status TEXT,
    last_name_change TIMESTAMPTZ,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

-- Row level security
ALTER TABLE "TestResults" ENABLE ROW LEVEL SECURITY;
ALTER TABLE posts ENABLE ROW LEVEL SECURITY;
ALTER TABLE replies ENABLE ROW LEVEL SECURITY;
ALTER TABLE votes ENABLE ROW LEVEL SECURITY;
ALTER TABLE user_points ENABLE ROW LEVEL SECURITY;
ALTER TABLE point_grants ENABLE ROW LEVEL SECURITY;
ALTER TABLE profiles ENABLE ROW LEVEL SECURITY;

CREATE POLICY "own results" ON "TestResults" FOR ALL USING (auth.uid() = user_id) WITH CHECK (auth.uid() = user_id);
CREATE POLICY "read posts" ON posts FOR SELECT USING (true);
CREATE POLICY "write own posts" ON posts FOR INSERT WITH CHECK (auth.uid() = author_id);
CREATE POLICY "delete own posts" ON posts FOR DELETE USING (auth.uid() = author_id);
CREATE POLICY "read replies" ON replies FOR SELECT USING (true);
CREATE POLICY "write own replies" ON replies FOR INSERT WITH CHECK (auth.uid() = author_id);
CREATE POLICY "delete own replies" ON replies FOR DELETE USING (auth.uid() = author_id);
CREATE POLICY "read votes" ON votes FOR SELECT USING (true);
CREATE POLICY "own votes" ON votes FOR ALL USING (auth.uid() = user_id) WITH CHECK (auth.uid() = user_id);
CREATE POLICY "read points" ON user_points FOR SELECT USING (true);
CREATE POLICY "delete own points" ON user_points FOR DELETE USING (auth.uid() = user_id);
CREATE POLICY "read own grants" ON point_grants FOR SELECT USING (auth.uid() = user_id);
CREATE POLICY "own profile" ON profiles FOR ALL USING (auth.uid() = id) WITH CHECK (auth.uid() = id);

-- Create indexes for performance
CREATE INDEX IF NOT EXISTS idx_questions_subject ON "Questions"(subject);
CREATE INDEX IF NOT EXISTS idx_test_results_user_id ON "TestResults"(user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_posts_created_at ON posts(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_replies_post_id ON replies(post_id, created_at);
CREATE INDEX IF NOT EXISTS idx_votes_post_id ON votes(post_id);
"""


def split_statements(sql: str) -> list[str]:
    """Split on top-level semicolons; $$-quoted function bodies stay whole."""
    statements, current, in_body = [], [], False
    for line in sql.splitlines():
        if line.strip().startswith("--") and not in_body:
            continue
        current.append(line)
        if line.count("$$") % 2 == 1:
            in_body = not in_body
        if not in_body and line.rstrip().endswith(";"):
            stmt = "\n".join(current).strip()
            if stmt:
                statements.append(stmt)
            current = []
    tail = "\n".join(current).strip()
    if tail:
        statements.append(tail)
    return statements


if __name__ == "__main__":
    print("MedsPG schema")
    print(f"URL: {SUPABASE_URL or '(SUPABASE_URL not set)'}")
    statements = split_statements(SCHEMA_SQL)
    for i, stmt in enumerate(statements, 1):
        print(f"Statement {i}/{len(statements)}: {stmt.splitlines()[0][:60]}...")
    print("\nNote: Due to Supabase client limitations, run this SQL in Supabase SQL Editor:")
    print("Go to: https://app.supabase.com > SQL Editor > New Query")
    print(SCHEMA_SQL)
